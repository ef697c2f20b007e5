"""Catalog of meteorological variables the forecast can be built from."""

from __future__ import annotations

from firedanger.errors import ConfigurationError
from firedanger.models.enums import Aggregation, ProductShape
from firedanger.models.schemas import MeteorologicalVariable

VARIABLES: dict[str, MeteorologicalVariable] = {
    "vpd": MeteorologicalVariable(
        name="vpd", unit="kPa", aggregation=Aggregation.STATE, product=ProductShape.AGGREGATED
    ),
    "fm1000": MeteorologicalVariable(
        name="fm1000", unit="%", aggregation=Aggregation.STATE, invert_from=100.0
    ),
    "fm100": MeteorologicalVariable(
        name="fm100", unit="%", aggregation=Aggregation.STATE, invert_from=100.0
    ),
    "erc": MeteorologicalVariable(name="erc", unit="1", aggregation=Aggregation.STATE),
    "cwd": MeteorologicalVariable(name="cwd", unit="mm", aggregation=Aggregation.FLUX),
    "tmmx": MeteorologicalVariable(name="tmmx", unit="K", aggregation=Aggregation.STATE),
    "tmmn": MeteorologicalVariable(name="tmmn", unit="K", aggregation=Aggregation.STATE),
    "gdd_0": MeteorologicalVariable(
        name="gdd_0",
        unit="K",
        aggregation=Aggregation.FLUX,
        components=("tmmx", "tmmn"),
    ),
}


def get_variable(name: str) -> MeteorologicalVariable:
    try:
        return VARIABLES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown meteorological variable: {name}", {"variable": name}
        ) from None


def expand_upstream(names: list[str]) -> tuple[list[str], list[tuple[str, ...]]]:
    """Split upstream variables into independent ones and coupled groups.

    Derived variables are replaced by their components, which must then
    rotate together.

    Returns:
        (independent variable names, list of coupled groups)
    """
    independent: list[str] = []
    coupled: list[tuple[str, ...]] = []
    for name in names:
        var = get_variable(name)
        if var.is_derived:
            if var.components not in coupled:
                coupled.append(var.components)
        elif name not in independent:
            independent.append(name)

    in_groups = {c for group in coupled for c in group}
    independent = [v for v in independent if v not in in_groups]
    return independent, coupled
