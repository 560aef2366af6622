"""Build power model configurations and estimators from configuration values.

Configuration keys combine a power source target prefix (such as
``NODE_TOTAL`` or ``CONTAINER_COMPONENTS``) with an attribute, e.g.
``NODE_TOTAL_ESTIMATOR``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from powermodel.linear import LinearRegressor
from powermodel.ratio import RatioPowerModel
from powermodel.sidecar import DEFAULT_SOCKET, EstimatorSidecar
from powermodel.types import (
    COMPONENT_ENERGY_SOURCE,
    PLATFORM_ENERGY_SOURCE,
    ModelConfig,
    ModelOutputType,
    ModelType,
    PowerModelError,
)

log = logging.getLogger(__name__)

# Power source targets.
NODE_PLATFORM_POWER_KEY = "NODE_TOTAL"
NODE_COMPONENTS_POWER_KEY = "NODE_COMPONENTS"
CONTAINER_PLATFORM_POWER_KEY = "CONTAINER_TOTAL"
CONTAINER_COMPONENTS_POWER_KEY = "CONTAINER_COMPONENTS"
PROCESS_PLATFORM_POWER_KEY = "PROCESS_TOTAL"
PROCESS_COMPONENTS_POWER_KEY = "PROCESS_COMPONENTS"

# Attributes of a power source target.
ESTIMATOR_ENABLED_KEY = "ESTIMATOR"
LINEAR_REGRESSION_ENABLED_KEY = "LINEAR_REGRESSION"
INIT_MODEL_URL_KEY = "INIT_URL"
FIXED_TRAINER_NAME_KEY = "TRAINER"
MODEL_FILTERS_KEY = "FILTERS"

_ENERGY_SOURCES = {
    CONTAINER_PLATFORM_POWER_KEY: PLATFORM_ENERGY_SOURCE,
    CONTAINER_COMPONENTS_POWER_KEY: COMPONENT_ENERGY_SOURCE,
    PROCESS_PLATFORM_POWER_KEY: PLATFORM_ENERGY_SOURCE,
    PROCESS_COMPONENTS_POWER_KEY: COMPONENT_ENERGY_SOURCE,
    NODE_PLATFORM_POWER_KEY: PLATFORM_ENERGY_SOURCE,
    NODE_COMPONENTS_POWER_KEY: COMPONENT_ENERGY_SOURCE,
}

_OUTPUT_TYPES = {
    CONTAINER_PLATFORM_POWER_KEY: ModelOutputType.DYN_POWER,
    CONTAINER_COMPONENTS_POWER_KEY: ModelOutputType.DYN_POWER,
    PROCESS_PLATFORM_POWER_KEY: ModelOutputType.DYN_POWER,
    PROCESS_COMPONENTS_POWER_KEY: ModelOutputType.DYN_POWER,
    NODE_PLATFORM_POWER_KEY: ModelOutputType.ABS_POWER,
    NODE_COMPONENTS_POWER_KEY: ModelOutputType.ABS_POWER,
}

_NODE_LEVEL_TARGETS = frozenset({NODE_PLATFORM_POWER_KEY, NODE_COMPONENTS_POWER_KEY})

PowerModel = RatioPowerModel | LinearRegressor | EstimatorSidecar


def get_model_config_key(model_item: str, attribute: str) -> str:
    """Return the configuration key of ``attribute`` for ``model_item``."""
    return f"{model_item}_{attribute}"


def _value(config_values: Mapping[str, str] | None, target: str, attribute: str) -> str:
    return (config_values or {}).get(get_model_config_key(target, attribute), "")


def get_power_model_type(
    power_source_target: str, config_values: Mapping[str, str] | None = None
) -> ModelType:
    """Return the model type for a target; node targets default to linear regression."""
    if _value(config_values, power_source_target, ESTIMATOR_ENABLED_KEY).lower() == "true":
        return ModelType.ESTIMATOR_SIDECAR
    if (
        _value(config_values, power_source_target, LINEAR_REGRESSION_ENABLED_KEY).lower()
        == "true"
    ):
        return ModelType.LINEAR_REGRESSOR
    if power_source_target in _NODE_LEVEL_TARGETS:
        return ModelType.LINEAR_REGRESSOR
    return ModelType.RATIO


def get_power_model_energy_source(power_source_target: str) -> str:
    """Return the energy source of a target, or an empty string if unknown."""
    return _ENERGY_SOURCES.get(power_source_target, "")


def get_power_model_output_type(power_source_target: str) -> ModelOutputType:
    """Return absolute power for node targets, dynamic power for the others."""
    return _OUTPUT_TYPES.get(power_source_target, ModelOutputType.UNSUPPORTED)


def is_node_level(power_source_target: str) -> bool:
    """Whether the target is a node platform or node components target."""
    return power_source_target in _NODE_LEVEL_TARGETS


def create_power_model_config(
    power_source_target: str, config_values: Mapping[str, str] | None = None
) -> ModelConfig | None:
    """Build the model configuration of a target, or None if it is unsupported."""
    model_type = get_power_model_type(power_source_target, config_values)
    output_type = get_power_model_output_type(power_source_target)
    energy_source = get_power_model_energy_source(power_source_target)
    if output_type == ModelOutputType.UNSUPPORTED or not energy_source:
        log.debug("unsupported power source target %s", power_source_target)
        return None
    model_config = ModelConfig(
        model_type=model_type,
        model_output_type=output_type,
        trainer_name=_value(config_values, power_source_target, FIXED_TRAINER_NAME_KEY),
        select_filter=_value(config_values, power_source_target, MODEL_FILTERS_KEY),
        init_model_url=_value(config_values, power_source_target, INIT_MODEL_URL_KEY),
        is_node_power_model=is_node_level(power_source_target),
        energy_source=energy_source,
        node_feature_names=[],
    )
    log.debug("model config %s: %s", power_source_target, model_config)
    return model_config


def create_power_model_estimator(
    model_config: ModelConfig,
    model_server_endpoint: str = "",
    model_server_enabled: bool = False,
    sidecar_socket: str = DEFAULT_SOCKET,
) -> PowerModel:
    """Create and start the estimator described by ``model_config``.

    Raises PowerModelError if the model type is unsupported or the model
    cannot be started.
    """
    model_type = model_config.model_type
    feature_names = (
        model_config.node_feature_names
        if model_config.is_node_power_model
        else model_config.container_feature_names
    )

    if model_type == ModelType.RATIO:
        log.debug("using power model Ratio")
        return RatioPowerModel(
            node_feature_names=model_config.node_feature_names,
            container_feature_names=model_config.container_feature_names,
        )

    if model_type == ModelType.LINEAR_REGRESSOR:
        model: PowerModel = LinearRegressor(
            model_server_endpoint=model_server_endpoint,
            output_type=model_config.model_output_type,
            energy_source=model_config.energy_source,
            trainer_name=model_config.trainer_name,
            select_filter=model_config.select_filter,
            model_weights_url=model_config.init_model_url,
            model_weights_filepath=model_config.init_model_filepath,
            float_feature_names=feature_names,
            system_meta_data_feature_names=model_config.system_meta_data_feature_names,
            system_meta_data_feature_values=model_config.system_meta_data_feature_values,
            model_server_enabled=model_server_enabled,
        )
        model.start()
        log.debug("using power model %s", model_config.model_output_type)
        return model

    if model_type == ModelType.ESTIMATOR_SIDECAR:
        model = EstimatorSidecar(
            socket_path=sidecar_socket,
            output_type=model_config.model_output_type,
            trainer_name=model_config.trainer_name,
            select_filter=model_config.select_filter,
            float_feature_names=feature_names,
            system_meta_data_feature_names=model_config.system_meta_data_feature_names,
            system_meta_data_feature_values=model_config.system_meta_data_feature_values,
            energy_source=model_config.energy_source,
        )
        model.start()
        log.debug("using power model %s", model_config.model_output_type)
        return model

    name = str(model_type) if isinstance(model_type, ModelType) else "unknown"
    error = PowerModelError(f"power Model {name} is not supported")
    log.debug("%s", error)
    raise error