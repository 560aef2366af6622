"""Shared types and helpers for the power estimation models."""

from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

PLATFORM_ENERGY_SOURCE = "acpi"
COMPONENT_ENERGY_SOURCE = "rapl"

# Names of the power components reported by the estimators.
PKG = "pkg"
CORE = "core"
DRAM = "dram"
UNCORE = "uncore"
OTHER = "other"
GPU = "gpu"
PLATFORM = "platform"

JOULE_TO_MILLIJOULE = 1000


class PowerModelError(Exception):
    """Raised when a power model cannot produce an estimate."""


class ModelType(enum.IntEnum):
    """Kind of power model used for estimation."""

    RATIO = 1
    LINEAR_REGRESSOR = 2
    ESTIMATOR_SIDECAR = 3

    def __str__(self) -> str:
        return _MODEL_TYPE_NAMES[self]

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


class ModelOutputType(enum.IntEnum):
    """Whether a model predicts absolute or dynamic power."""

    ABS_POWER = 1
    DYN_POWER = 2
    UNSUPPORTED = 3

    def __str__(self) -> str:
        return _OUTPUT_TYPE_NAMES.get(self, "unknown")

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


_MODEL_TYPE_NAMES = {
    ModelType.RATIO: "Ratio",
    ModelType.LINEAR_REGRESSOR: "LinearRegressor",
    ModelType.ESTIMATOR_SIDECAR: "EstimatorSidecar",
}

_OUTPUT_TYPE_NAMES = {
    ModelOutputType.ABS_POWER: "AbsPower",
    ModelOutputType.DYN_POWER: "DynPower",
}


@dataclass
class ModelConfig:
    """Configuration used to build a power model."""

    model_type: ModelType
    model_output_type: ModelOutputType
    trainer_name: str = ""
    energy_source: str = ""
    select_filter: str = ""
    init_model_url: str = ""
    init_model_filepath: str = ""
    is_node_power_model: bool = False
    container_feature_names: list[str] = field(default_factory=list)
    node_feature_names: list[str] = field(default_factory=list)
    system_meta_data_feature_names: list[str] = field(default_factory=list)
    system_meta_data_feature_values: list[str] = field(default_factory=list)


@dataclass
class ComponentPower:
    """Power (or energy) of the RAPL components, in milli units."""

    pkg: int = 0
    core: int = 0
    dram: int = 0
    uncore: int = 0


def get_component_power(
    powers: Mapping[str, Sequence[float]], component_key: str, index: int
) -> int:
    """Return the component value at ``index`` in milli units, or 0 if absent."""
    values = powers.get(component_key, ())
    if index >= len(values):
        return 0
    return int(values[index] * JOULE_TO_MILLIJOULE)


def fill_node_components_power(
    pkg_power: int, core_power: int, uncore_power: int, dram_power: int
) -> ComponentPower:
    """Fill in a missing package or core value from the other components."""
    if pkg_power < core_power + uncore_power:
        pkg_power = core_power + uncore_power
    if core_power == 0:
        core_power = pkg_power - uncore_power
    return ComponentPower(
        pkg=pkg_power, core=core_power, dram=dram_power, uncore=uncore_power
    )