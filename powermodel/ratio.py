"""Ratio power models: share node power by each instance's resource usage."""

from __future__ import annotations

import enum
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from powermodel.types import ComponentPower, ModelType, PowerModelError

MAX_PROCESSES = 2000


class ComponentFeature(enum.IntEnum):
    """Position of each value in the component feature list."""

    PKG_USAGE = 0
    CORE_USAGE = 1
    DRAM_USAGE = 2
    UNCORE_USAGE = 3
    OTHER_USAGE = 4
    GPU_USAGE = 5
    PKG_DYN_POWER = 6
    CORE_DYN_POWER = 7
    DRAM_DYN_POWER = 8
    UNCORE_DYN_POWER = 9
    OTHER_DYN_POWER = 10
    GPU_DYN_POWER = 11
    PKG_IDLE_POWER = 12
    CORE_IDLE_POWER = 13
    DRAM_IDLE_POWER = 14
    UNCORE_IDLE_POWER = 15
    OTHER_IDLE_POWER = 16
    GPU_IDLE_POWER = 17


class PlatformFeature(enum.IntEnum):
    """Position of each value in the platform feature list."""

    USAGE = 0
    DYN_POWER = 1
    IDLE_POWER = 2


@dataclass
class _RatioState:
    node_feature_names: list[str] = field(default_factory=list)
    _samples: list[list[float]] = field(default_factory=list, init=False, repr=False)
    _node_values: list[float] = field(default_factory=list, init=False, repr=False)
    _xidx: int = field(default=0, init=False, repr=False)
    _desired: list[float] = field(default_factory=list, init=False, repr=False)

    model_type = ModelType.RATIO

    @property
    def sample_count(self) -> int:
        """Number of samples added since the last reset."""
        return self._xidx

    def _add_sample(self, x: Sequence[float]) -> None:
        # Rows are reused between rounds; only the leading values are replaced.
        if self._xidx < len(self._samples):
            self._samples[self._xidx][: len(x)] = x
        else:
            self._samples.append(list(x))
        self._xidx += 1

    def _set_node_values(self, x: Sequence[float]) -> None:
        self._node_values[: len(x)] = x

    def _record_desired(self, y: float) -> None:
        # Ratio models are not fitted; outputs are only held until the next round.
        self._desired.append(float(y))

    def _discard_desired(self) -> None:
        self._desired.clear()

    def _node_value(self, feature: int) -> float:
        try:
            return self._node_values[feature]
        except IndexError:
            raise PowerModelError(f"node feature {feature} has not been set") from None

    def _sample_value(self, idx: int, feature: int) -> float:
        try:
            return self._samples[idx][feature]
        except IndexError:
            raise PowerModelError(
                f"feature {feature} of sample {idx} has not been set"
            ) from None

    def _power_by_ratio(
        self, idx: int, usage_feature: int, power_feature: int, count: int
    ) -> float:
        node_usage = self._node_value(usage_feature)
        node_power = self._node_value(power_feature)
        if node_usage == 0 or usage_feature == ComponentFeature.UNCORE_USAGE:
            power = node_power / count
        else:
            power = (self._sample_value(idx, usage_feature) / node_usage) * node_power
        return float(math.ceil(power))

    def _per_sample(
        self, usage: int, dyn: int, idle: int, is_idle_power: bool
    ) -> list[float]:
        count = self._xidx
        if count == 0:
            return []
        if is_idle_power:
            share = self._node_value(idle) / count
            return [share] * count
        return [self._power_by_ratio(i, usage, dyn, count) for i in range(count)]

    def _platform_power(self, is_idle_power: bool) -> list[float]:
        return self._per_sample(
            PlatformFeature.USAGE,
            PlatformFeature.DYN_POWER,
            PlatformFeature.IDLE_POWER,
            is_idle_power,
        )

    def _components_power(self, is_idle_power: bool) -> list[ComponentPower]:
        f = ComponentFeature
        pkg = self._per_sample(f.PKG_USAGE, f.PKG_DYN_POWER, f.PKG_IDLE_POWER, is_idle_power)
        core = self._per_sample(f.CORE_USAGE, f.CORE_DYN_POWER, f.CORE_IDLE_POWER, is_idle_power)
        dram = self._per_sample(f.DRAM_USAGE, f.DRAM_DYN_POWER, f.DRAM_IDLE_POWER, is_idle_power)
        uncore = self._per_sample(
            f.UNCORE_USAGE, f.UNCORE_DYN_POWER, f.UNCORE_IDLE_POWER, is_idle_power
        )
        return [
            ComponentPower(pkg=int(p), core=int(c), dram=int(d), uncore=int(u))
            for p, c, d, u in zip(pkg, core, dram, uncore)
        ]

    def _gpu_power(self, is_idle_power: bool) -> list[float]:
        return self._per_sample(
            ComponentFeature.GPU_USAGE,
            ComponentFeature.GPU_DYN_POWER,
            ComponentFeature.GPU_IDLE_POWER,
            is_idle_power,
        )


@dataclass
class RatioPowerModel(_RatioState):
    """Ratio model for containers."""

    container_feature_names: list[str] = field(default_factory=list)

    def get_platform_power(self, is_idle_power: bool) -> list[float]:
        """Return the platform power of each container."""
        return self._platform_power(is_idle_power)

    def get_components_power(self, is_idle_power: bool) -> list[ComponentPower]:
        """Return the RAPL component power of each container."""
        return self._components_power(is_idle_power)

    def get_gpu_power(self, is_idle_power: bool) -> list[float]:
        """Return the GPU power of each container."""
        return self._gpu_power(is_idle_power)

    def add_container_feature_values(self, x: Sequence[float]) -> None:
        """Add one container's feature values for prediction."""
        self._add_sample(x)

    def add_node_feature_values(self, x: Sequence[float]) -> None:
        """Set the node usage and power values used as the ratio base."""
        self._set_node_values(x)

    def add_desired_out_value(self, y: float) -> None:
        """Hold a desired output; ratio models do not fit on it."""
        self._record_desired(y)

    def reset_sample_idx(self) -> None:
        """Start a new round of samples, overwriting the previous ones."""
        self._xidx = 0
        self._discard_desired()

    def train(self) -> None:
        """Ratio models are not fitted; held desired outputs are dropped."""
        self._discard_desired()

    def is_enabled(self) -> bool:
        """Ratio models are always active."""
        return True


@dataclass
class RatioProcessPowerModel(_RatioState):
    """Ratio model for processes, bounded in memory."""

    process_feature_names: list[str] = field(default_factory=list)

    def get_platform_power(self, is_idle_power: bool) -> list[float]:
        """Return the platform power of each process."""
        return self._platform_power(is_idle_power)

    def get_components_power(self, is_idle_power: bool) -> list[ComponentPower]:
        """Return the RAPL component power of each process."""
        return self._components_power(is_idle_power)

    def get_gpu_power(self, is_idle_power: bool) -> list[float]:
        """Return the GPU power of each process."""
        return self._gpu_power(is_idle_power)

    def add_process_feature_values(self, x: Sequence[float]) -> None:
        """Add one process's feature values for prediction."""
        self._add_sample(x)

    def add_node_feature_values(self, x: Sequence[float]) -> None:
        """Set the node usage and power values used as the ratio base."""
        self._set_node_values(x)

    def add_desired_out_value(self, y: float) -> None:
        """Hold a desired output; ratio models do not fit on it."""
        self._record_desired(y)

    def reset_sample_idx(self) -> None:
        """Start a new round; drop stored rows once they exceed MAX_PROCESSES."""
        self._xidx = 0
        self._discard_desired()
        if len(self._samples) > MAX_PROCESSES:
            self._samples = []

    def train(self) -> None:
        """Ratio models are not fitted; held desired outputs are dropped."""
        self._discard_desired()

    def is_enabled(self) -> bool:
        """Ratio models are always active."""
        return True