"""Linear regression power model using pre-trained weights.

Weights come from a model server, or from an initial model URL, or from a
local file, tried in that order.
"""

from __future__ import annotations

import json
import logging
import math
import urllib.error
import urllib.request
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

DEFAULT_NODE_TYPE = 1


@dataclass
class CategoricalFeature:
    """Weight of one value of a categorical feature."""

    weight: float = 0.0


@dataclass
class NormalizedNumericalFeature:
    """Weight of a numerical feature and the scale used to normalize it."""

    scale: float = 0.0
    weight: float = 0.0


def _as_mapping(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PowerModelError(f"model unmarshal error: {what} is not an object")
    return value


def _as_float(value: Any, what: str) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PowerModelError(f"model unmarshal error: {what} is not a number")
    return float(value)


def _divide(numerator: float, denominator: float) -> float:
    if denominator != 0:
        return numerator / denominator
    if numerator == 0 or math.isnan(numerator):
        return math.nan
    return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)


@dataclass
class ModelWeights:
    """Weights of a single linear model."""

    bias_weight: float = 0.0
    categorical_variables: dict[str, dict[str, CategoricalFeature]] = field(
        default_factory=dict
    )
    numerical_variables: dict[str, NormalizedNumericalFeature] = field(
        default_factory=dict
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ModelWeights:
        """Build weights from their decoded JSON form."""
        root = _as_mapping(data, "model weights")
        weights = _as_mapping(root.get("All_Weights"), "All_Weights")
        categorical = {
            name: {
                value: CategoricalFeature(
                    weight=_as_float(
                        _as_mapping(coeff, f"{name}/{value}").get("weight"), "weight"
                    )
                )
                for value, coeff in _as_mapping(values, name).items()
            }
            for name, values in _as_mapping(
                weights.get("Categorical_Variables"), "Categorical_Variables"
            ).items()
        }
        numerical = {}
        for name, coeff in _as_mapping(
            weights.get("Numerical_Variables"), "Numerical_Variables"
        ).items():
            coeff = _as_mapping(coeff, name)
            numerical[name] = NormalizedNumericalFeature(
                scale=_as_float(coeff.get("scale"), "scale"),
                weight=_as_float(coeff.get("weight"), "weight"),
            )
        return cls(
            bias_weight=_as_float(weights.get("Bias_Weight"), "Bias_Weight"),
            categorical_variables=categorical,
            numerical_variables=numerical,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready form of these weights."""
        return {
            "All_Weights": {
                "Bias_Weight": self.bias_weight,
                "Categorical_Variables": {
                    name: {value: {"weight": c.weight} for value, c in values.items()}
                    for name, values in self.categorical_variables.items()
                },
                "Numerical_Variables": {
                    name: {"scale": n.scale, "weight": n.weight}
                    for name, n in self.numerical_variables.items()
                },
            }
        }

    def predict(
        self,
        usage_metric_names: Sequence[str],
        usage_metric_values: Sequence[Sequence[float]],
        system_feature_names: Sequence[str],
        system_feature_values: Sequence[str],
    ) -> list[float]:
        """Predict one power value for each row of usage values."""
        if len(system_feature_values) < len(system_feature_names):
            raise PowerModelError(
                "fewer system feature values than system feature names"
            )
        base_power = self.bias_weight
        for name, value in zip(system_feature_names, system_feature_values):
            coeff = self.categorical_variables.get(name, {}).get(value)
            if coeff is not None:
                base_power += coeff.weight

        numerical = [
            self.numerical_variables.get(name, NormalizedNumericalFeature())
            for name in usage_metric_names
        ]
        powers = []
        for row in usage_metric_values:
            power = base_power
            for index, coeff in enumerate(numerical):
                if coeff.weight == 0:
                    continue
                try:
                    value = row[index]
                except IndexError:
                    raise PowerModelError(
                        f"sample has no value for feature {usage_metric_names[index]}"
                    ) from None
                power += coeff.weight * _divide(value, coeff.scale)
            powers.append(power)
        return powers


def parse_component_weights(data: str | bytes | Mapping[str, Any]) -> dict[str, ModelWeights]:
    """Parse weights keyed by power component from JSON text or a mapping."""
    if isinstance(data, (str, bytes, bytearray)):
        try:
            decoded = json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            text = data if isinstance(data, str) else bytes(data).decode("utf-8", "replace")
            raise PowerModelError(f"model unmarshal error: {exc} ({text})") from exc
    else:
        decoded = data
    if not isinstance(decoded, Mapping):
        raise PowerModelError("model unmarshal error: weights are not an object")
    return {comp: ModelWeights.from_dict(w) for comp, w in decoded.items()}


@dataclass
class LinearRegressor:
    """Power estimator applying linear regression weights to usage samples."""

    model_server_endpoint: str = ""
    output_type: ModelOutputType = ModelOutputType.DYN_POWER
    energy_source: str = ""
    trainer_name: str = ""
    select_filter: str = ""
    model_weights_url: str = ""
    model_weights_filepath: str = ""
    float_feature_names: list[str] = field(default_factory=list)
    system_meta_data_feature_names: list[str] = field(default_factory=list)
    system_meta_data_feature_values: list[str] = field(default_factory=list)
    model_server_enabled: bool = False
    timeout: float | None = None

    _values: list[list[float]] = field(default_factory=list, init=False, repr=False)
    _idle_values: list[list[float]] = field(default_factory=list, init=False, repr=False)
    _xidx: int = field(default=0, init=False, repr=False)
    _enabled: bool = field(default=False, init=False, repr=False)
    _weights: dict[str, ModelWeights] | None = field(default=None, init=False, repr=False)
    _desired: list[float] = field(default_factory=list, init=False, repr=False)

    model_type = ModelType.LINEAR_REGRESSOR

    @property
    def container_feature_names(self) -> list[str]:
        """Features used for containers (same as for nodes)."""
        return self.float_feature_names

    @property
    def node_feature_names(self) -> list[str]:
        """Features used for nodes (same as for containers)."""
        return self.float_feature_names

    @property
    def weights(self) -> dict[str, ModelWeights] | None:
        """The loaded weights, keyed by component."""
        return self._weights

    def start(self) -> None:
        """Load the model weights; raise PowerModelError if none can be obtained."""
        output = str(self.output_type)
        self._enabled = False
        weights = None
        error: PowerModelError | None = None
        if self.model_server_enabled and self.model_server_endpoint:
            try:
                weights = self._weights_from_server()
            except PowerModelError as exc:
                error = exc
            log.debug("LR model (%s): weights from server: %s (error: %s)", output, weights, error)
        if weights is None:
            try:
                weights = self._weights_from_url_or_local()
            except PowerModelError as exc:
                error = exc
            log.debug(
                "LR model (%s): weights from %s: %s (error: %s)",
                output, self.model_weights_url, weights, error,
            )
        if weights is None:
            if error is None:
                error = PowerModelError(f"the model LR ({output}): has no config")
            log.debug("LR model (%s): %s", output, error)
            raise error
        self._weights = weights
        self._enabled = True

    def _weights_from_server(self) -> dict[str, ModelWeights]:
        model_request = {
            "metrics": [*self.float_feature_names, *self.system_meta_data_feature_names],
            "output_type": str(self.output_type),
            "source": self.energy_source,
            "node_type": DEFAULT_NODE_TYPE,
            "weight": True,
            "trainer_name": self.trainer_name,
            "filter": self.select_filter,
        }
        request = urllib.request.Request(
            self.model_server_endpoint,
            data=json.dumps(model_request).encode("utf-8"),
            headers={"Content-Type": "application/json; charset=UTF-8"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                status = response.status
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise PowerModelError(
                f"status not ok: {exc.code} {exc.reason} ({model_request})"
            ) from exc
        except (OSError, ValueError) as exc:
            raise PowerModelError(
                f"connection error: {exc} ({self.model_server_endpoint})"
            ) from exc
        if status != 200:
            raise PowerModelError(f"status not ok: {status} ({model_request})")
        return parse_component_weights(body)

    def _weights_from_url_or_local(self) -> dict[str, ModelWeights]:
        try:
            body = self._load_from_url()
        except PowerModelError:
            body = self._load_from_local()
        return parse_component_weights(body)

    def _load_from_local(self) -> bytes:
        try:
            with open(self.model_weights_filepath, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise PowerModelError(
                f"cannot read model weights {self.model_weights_filepath!r}: {exc}"
            ) from exc

    def _load_from_url(self) -> bytes:
        if not self.model_weights_url:
            raise PowerModelError("ModelWeightsURL is empty")
        try:
            with urllib.request.urlopen(self.model_weights_url, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as exc:
            # The body of an error response is still handed to the parser.
            return exc.read()
        except (OSError, ValueError) as exc:
            raise PowerModelError(
                f"connection error: {exc} ({self.model_weights_url})"
            ) from exc

    def _rows(self, is_idle_power: bool) -> list[list[float]]:
        source = self._idle_values if is_idle_power else self._values
        return source[: self._xidx]

    def _predict(self, weights: ModelWeights, is_idle_power: bool) -> list[float]:
        return weights.predict(
            self.float_feature_names,
            self._rows(is_idle_power),
            self.system_meta_data_feature_names,
            self.system_meta_data_feature_values,
        )

    def get_platform_power(self, is_idle_power: bool) -> list[float]:
        """Return the predicted platform power of each sample."""
        output = str(self.output_type)
        if not self._enabled:
            raise PowerModelError(f"disabled power model call: {output}")
        if self._weights is None:
            raise PowerModelError(f"model Weight for model type {output} is nil")
        weights = self._weights.get(PLATFORM)
        if weights is None:
            raise PowerModelError(
                f"model Weight for model type {output} is not valid: {self._weights}"
            )
        return self._predict(weights, is_idle_power)

    def get_components_power(self, is_idle_power: bool) -> list[ComponentPower]:
        """Return the predicted RAPL component power of each sample, in milliwatts."""
        if not self._enabled:
            raise PowerModelError(f"disabled power model call: {self.output_type}")
        if self._weights is None:
            self._enabled = False
            raise PowerModelError("model weight is not set")
        comp_powers = {
            comp: self._predict(weights, is_idle_power)
            for comp, weights in self._weights.items()
        }
        return [
            fill_node_components_power(
                get_component_power(comp_powers, PKG, index),
                get_component_power(comp_powers, CORE, index),
                get_component_power(comp_powers, UNCORE, index),
                get_component_power(comp_powers, DRAM, index),
            )
            for index in range(self._xidx)
        ]

    def get_gpu_power(self, is_idle_power: bool) -> list[float]:
        """GPU power is not supported by this model; always raises PowerModelError."""
        if not self._enabled:
            raise PowerModelError(f"disabled power model call: {self.output_type}")
        kind = "idle" if is_idle_power else "absolute"
        samples = len(self._rows(is_idle_power))
        log.debug(
            "LR model (%s): %s GPU power requested for %d samples",
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
        """Hold a desired output; the model is trained off-line and does not fit on it."""
        self._desired.append(float(y))

    def reset_sample_idx(self) -> None:
        """Start a new round of samples, overwriting the previous ones."""
        self._xidx = 0
        self._desired.clear()

    def train(self) -> None:
        """The model is trained off-line; held desired outputs are dropped."""
        self._desired.clear()

    def is_enabled(self) -> bool:
        """Whether weights have been loaded."""
        return self._enabled