"""Daily wildfire ignition-danger forecasting core."""

__version__ = "0.1.0"
