"""Power estimator that delegates prediction to an estimator sidecar.

The sidecar listens on a Unix domain socket, receives one JSON request per
connection and answers with the predicted powers keyed by component.
"""

from __future__ import annotations

import json
import logging
import socket
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from powermodel.types import (
    CORE,
    DRAM,
    PKG,
    PLATFORM,
    UNCORE,
    ComponentPower,
    ModelOutputType,
    ModelType,
    PowerModelError,
    fill_node_components_power,
    get_component_power,
)

log = logging.getLogger(__name__)

DEFAULT_SOCKET = "/tmp/estimator.sock"
MAX_CONTAINERS = 500  # 256 pods and 2 containers per pod

_BUFFER_SIZE = 4096


def _parse_powers(data: bytes) -> dict[str, list[float]]:
    text = data.decode("utf-8", "replace")
    try:
        decoded = json.loads(data)
    except (ValueError, UnicodeDecodeError) as exc:
        log.debug("estimator unmarshal error: %s (%s)", exc, text)
        raise PowerModelError(f"estimator unmarshal error: {exc} ({text})") from exc
    if not isinstance(decoded, Mapping):
        raise PowerModelError(f"estimator unmarshal error: response is not an object ({text})")
    powers = decoded.get("powers")
    if powers is None:
        return {}
    if not isinstance(powers, Mapping):
        raise PowerModelError(f"estimator unmarshal error: powers is not an object ({text})")
    result: dict[str, list[float]] = {}
    for component, values in powers.items():
        if values is None:
            result[component] = []
            continue
        if not isinstance(values, list) or any(
            isinstance(v, bool) or not isinstance(v, (int, float)) for v in values
        ):
            raise PowerModelError(
                f"estimator unmarshal error: powers of {component} are not numbers ({text})"
            )
        result[component] = [float(v) for v in values]
    return result


@dataclass
class EstimatorSidecar:
    """Power estimator backed by the estimator sidecar."""

    socket_path: str = DEFAULT_SOCKET
    output_type: ModelOutputType = ModelOutputType.DYN_POWER
    energy_source: str = ""
    trainer_name: str = ""
    select_filter: str = ""
    float_feature_names: list[str] = field(default_factory=list)
    system_meta_data_feature_names: list[str] = field(default_factory=list)
    system_meta_data_feature_values: list[str] = field(default_factory=list)
    timeout: float | None = None

    _values: list[list[float]] = field(default_factory=list, init=False, repr=False)
    _idle_values: list[list[float]] = field(default_factory=list, init=False, repr=False)
    _xidx: int = field(default=0, init=False, repr=False)
    _enabled: bool = field(default=False, init=False, repr=False)
    _desired: list[float] = field(default_factory=list, init=False, repr=False)

    model_type = ModelType.ESTIMATOR_SIDECAR

    @property
    def container_feature_names(self) -> list[str]:
        """Features used for containers (same as for nodes)."""
        return self.float_feature_names

    @property
    def node_feature_names(self) -> list[str]:
        """Features used for nodes (same as for containers)."""
        return self.float_feature_names

    def start(self) -> None:
        """Check that the sidecar answers; raise PowerModelError if it does not."""
        self._enabled = False
        zeros = [0.0] * len(self.float_feature_names)
        self.make_request([zeros], self.system_meta_data_feature_values)
        self._enabled = True

    def make_request(
        self, usage_values: Sequence[Sequence[float]], system_values: Sequence[str]
    ) -> dict[str, list[float]]:
        """Send usage values to the sidecar and return the predicted powers."""
        request: dict[str, Any] = {
            "metrics": list(self.float_feature_names),
            "values": [list(row) for row in usage_values],
            "output_type": str(self.output_type),
            "source": self.energy_source,
            "system_features": list(self.system_meta_data_feature_names),
            "system_values": list(system_values),
            "trainer_name": self.trainer_name,
            "filter": self.select_filter,
        }
        try:
            payload = json.dumps(request, allow_nan=False).encode("utf-8")
        except ValueError as exc:
            log.debug("marshal error: %s (%s)", exc, request)
            raise PowerModelError(f"marshal error: {exc}") from exc

        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as conn:
                conn.settimeout(self.timeout)
                conn.connect(self.socket_path)
                conn.sendall(payload)
                data = conn.recv(_BUFFER_SIZE)
        except OSError as exc:
            log.debug("estimator connection error: %s", exc)
            raise PowerModelError(
                f"estimator connection error: {exc} ({self.socket_path})"
            ) from exc
        return _parse_powers(data)

    def _rows(self, is_idle_power: bool) -> list[list[float]]:
        source = self._idle_values if is_idle_power else self._values
        return source[: self._xidx]

    def get_platform_power(self, is_idle_power: bool) -> list[float]:
        """Return the platform power of each sample as predicted by the sidecar."""
        if not self._enabled:
            raise PowerModelError(f"disabled power model call: {self.output_type}")
        powers = self.make_request(
            self._rows(is_idle_power), self.system_meta_data_feature_values
        )
        if not powers:
            return []
        if PLATFORM not in powers:
            raise PowerModelError(f"not found {PLATFORM} in response {powers}")
        return powers[PLATFORM]

    def get_components_power(self, is_idle_power: bool) -> list[ComponentPower]:
        """Return the RAPL component power of each sample, in milliwatts."""
        if not self._enabled:
            raise PowerModelError(f"disabled power model call: {self.output_type}")
        powers = self.make_request(
            self._rows(is_idle_power), self.system_meta_data_feature_values
        )
        count = len(next(iter(powers.values()), []))
        return [
            fill_node_components_power(
                get_component_power(powers, PKG, index),
                get_component_power(powers, CORE, index),
                get_component_power(powers, UNCORE, index),
                get_component_power(powers, DRAM, index),
            )
            for index in range(count)
        ]

    def get_gpu_power(self, is_idle_power: bool) -> list[float]:
        """GPU power is not supported by this model; always raises PowerModelError."""
        if not self._enabled:
            raise PowerModelError(f"disabled power model call: {self.output_type}")
        kind = "idle" if is_idle_power else "absolute"
        samples = len(self._rows(is_idle_power))
        log.debug(
            "sidecar model (%s): %s GPU power requested for %d samples",
            self.output_type, kind, samples,
        )
        raise PowerModelError("current power model does not support GPUs")

    def _add_values(self, x: Sequence[float]) -> None:
        # Rows are reused between rounds; the idle shadow rows stay zero.
        if self._xidx < len(self._values):
            row = self._values[self._xidx]
            row[: len(x)] = x
            idle = self._idle_values[self._xidx]
            idle.extend([0.0] * (len(row) - len(idle)))
        else:
            self._values.append(list(x))
            self._idle_values.append([0.0] * len(x))
        self._xidx += 1

    def add_container_feature_values(self, x: Sequence[float]) -> None:
        """Add one container's feature values for prediction."""
        self._add_values(x)

    def add_node_feature_values(self, x: Sequence[float]) -> None:
        """Add the node's feature values for prediction."""
        self._add_values(x)

    def add_desired_out_value(self, y: float) -> None:
        """Hold a desired output; the sidecar model is trained elsewhere and does not fit on it."""
        self._desired.append(float(y))

    def reset_sample_idx(self) -> None:
        """Start a new round of samples, overwriting the previous ones."""
        self._xidx = 0
        self._desired.clear()

    def train(self) -> None:
        """The sidecar model is trained elsewhere; held desired outputs are dropped."""
        self._desired.clear()

    def is_enabled(self) -> bool:
        """Whether the sidecar answered when the model was started."""
        return self._enabled