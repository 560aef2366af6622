# powermodel

Power models that estimate how much power each container, process or node
uses. They work from resource-usage samples and from node-level power values.

## Models

- `RatioPowerModel` and `RatioProcessPowerModel` (`powermodel.ratio`) split
  the node's dynamic power among containers or processes in proportion to
  their resource usage. Idle power is split evenly. Uncore power, and any
  feature whose node usage is zero, is also split evenly. Dynamic shares are
  rounded up. `RatioProcessPowerModel` drops its stored rows on reset once
  there are more than `MAX_PROCESSES` (2000) of them.
- `LinearRegressor` (`powermodel.linear`) applies pre-trained linear-regression
  weights (`ModelWeights`). `start()` tries three sources in order:
  1. a model server, if `model_server_enabled` is set and
     `model_server_endpoint` is not empty;
  2. `model_weights_url`;
  3. the local JSON file at `model_weights_filepath`.

  `parse_component_weights` reads weights keyed by component (`"core"`,
  `"dram"`, `"platform"`, ...) from JSON text or from a mapping.
- `EstimatorSidecar` (`powermodel.sidecar`) sends the feature values as JSON
  over a Unix socket (default `/tmp/estimator.sock`) to an estimator process.
  It reads back the predicted powers, keyed by component.

### Using a model

1. Call `reset_sample_idx()` to start a round of samples.
2. Add samples:
   - containers: `add_container_feature_values(...)`;
   - processes, with the process ratio model: `add_process_feature_values(...)`;
   - the node: `add_node_feature_values(...)`.
3. Ask for estimates:
   - `get_platform_power(is_idle_power)` returns a list of floats;
   - `get_components_power(is_idle_power)` returns a list of `ComponentPower`
     with `pkg`, `core`, `dram` and `uncore` values;
   - `get_gpu_power(is_idle_power)` returns a list of floats.

If an estimate cannot be made, these methods raise
`powermodel.types.PowerModelError`. `LinearRegressor` and `EstimatorSidecar`
do not support GPU power, so their `get_gpu_power` always raises.

`LinearRegressor` and `EstimatorSidecar` return component values in milli
units. For these models, `fill_node_components_power` fills in a missing
package or core value from the other components.

## Example

```python
from powermodel.ratio import RatioPowerModel

model = RatioPowerModel(container_feature_names=["cpu_time"],
                        node_feature_names=["cpu_time", "platform_DYN", "platform_IDLE"])
model.reset_sample_idx()
model.add_container_feature_values([10.0])
model.add_container_feature_values([30.0])
model.add_node_feature_values([40.0, 1000.0, 200.0])
print(model.get_platform_power(False))   # [250.0, 750.0]
print(model.get_platform_power(True))    # [100.0, 100.0]
```

## Choosing a model from configuration

`powermodel.factory` takes a mapping of settings. Each key is made of a target
prefix and an attribute.

Target prefixes:

- `NODE_TOTAL`, `NODE_COMPONENTS`
- `CONTAINER_TOTAL`, `CONTAINER_COMPONENTS`
- `PROCESS_TOTAL`, `PROCESS_COMPONENTS`

Attributes:

- `ESTIMATOR`
- `LINEAR_REGRESSION`
- `INIT_URL`
- `TRAINER`
- `FILTERS`

For example, `CONTAINER_COMPONENTS_ESTIMATOR` or `NODE_TOTAL_INIT_URL`.

```python
from powermodel.factory import create_power_model_config, create_power_model_estimator

config = create_power_model_config("CONTAINER_TOTAL", {"CONTAINER_TOTAL_ESTIMATOR": "false"})
model = create_power_model_estimator(config)   # a RatioPowerModel
```

`create_power_model_config` returns `None` for an unknown target.

The model type is chosen as follows:

- `*_ESTIMATOR=true` selects the sidecar.
- `*_LINEAR_REGRESSION=true` selects linear regression.
- Otherwise, node targets default to linear regression and all other targets
  default to the ratio model.

`create_power_model_estimator` creates the model and starts it. It raises
`PowerModelError` if the model cannot be started.

## What this package does not do

This package does not collect metrics. It reads no RAPL, ACPI or GPU
counters, no cgroup or eBPF statistics, and it exports nothing. You supply the
feature values, and you turn the returned power into energy.

The package does not read settings from the environment; pass them to
`powermodel.factory` as a mapping. It has no built-in default weight files:
`LinearRegressor` reads a local file only when `model_weights_filepath` is
given. It has no command-line program.

## Running the tests

```
pip install -e .[test]
pytest
```