import json
import math
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from powermodel.linear import (
    CategoricalFeature,
    LinearRegressor,
    ModelWeights,
    NormalizedNumericalFeature,
    parse_component_weights,
)
from powermodel.types import (
    COMPONENT_ENERGY_SOURCE,
    CORE,
    DRAM,
    PLATFORM,
    PLATFORM_ENERGY_SOURCE,
    ModelOutputType,
    PowerModelError,
)

CONTAINER_FEATURE_NAMES = [
    "cpu_cycles",
    "cpu_instructions",
    "cache_miss",
    "cgroupfs_memory_usage_bytes",
    "cgroupfs_kernel_memory_usage_bytes",
    "cgroupfs_tcp_memory_usage_bytes",
    "cgroupfs_cpu_usage_us",
    "cgroupfs_system_cpu_usage_us",
    "cgroupfs_user_cpu_usage_us",
    "cgroupfs_ioread_bytes",
    "cgroupfs_iowrite_bytes",
    "block_devices_used",
    "kubelet_cpu_usage",
    "kubelet_memory_bytes",
]
SYSTEM_FEATURE_NAMES = ["cpu_architecture"]
SYSTEM_FEATURE_VALUES = ["Sandy Bridge"]
CONTAINER_FEATURE_VALUES = [[1.0] * 14, [1.0] * 14]
NODE_FEATURE_VALUES = [2.0] * 14


def gen_weights(numerical):
    return {
        "All_Weights": {
            "Bias_Weight": 1.0,
            "Categorical_Variables": {"cpu_architecture": {"Sandy Bridge": {"weight": 1.0}}},
            "Numerical_Variables": numerical,
        }
    }


CORE_NUMERICAL = {"cpu_cycles": {"weight": 1.0, "scale": 1}}
DRAM_NUMERICAL = {"cache_miss": {"weight": 1.0, "scale": 1}}
COMPONENT_WEIGHTS = {CORE: gen_weights(CORE_NUMERICAL), DRAM: gen_weights(DRAM_NUMERICAL)}
PLATFORM_WEIGHTS = {PLATFORM: gen_weights(CORE_NUMERICAL)}


class _Handler(BaseHTTPRequestHandler):
    requests: list = []
    post_status = 200

    def log_message(self, *args):
        pass

    def _send(self, status, body):
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        req = json.loads(self.rfile.read(length))
        type(self).requests.append(req)
        if type(self).post_status != 200:
            self._send(type(self).post_status, b"failure")
            return
        if req["source"] == COMPONENT_ENERGY_SOURCE:
            payload = COMPONENT_WEIGHTS
        else:
            payload = PLATFORM_WEIGHTS
        self._send(200, json.dumps(payload).encode())

    def do_GET(self):
        if self.path == "/platform.json":
            self._send(200, json.dumps(PLATFORM_WEIGHTS).encode())
        else:
            self._send(404, b"404 page not found")


@pytest.fixture
def server():
    handler = type("Handler", (_Handler,), {"requests": [], "post_status": 200})
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}", handler
    finally:
        httpd.shutdown()
        httpd.server_close()


def gen_linear_regressor(output_type, energy_source, endpoint="", url="", filepath=""):
    return LinearRegressor(
        model_server_endpoint=endpoint,
        output_type=output_type,
        energy_source=energy_source,
        float_feature_names=list(CONTAINER_FEATURE_NAMES),
        system_meta_data_feature_names=list(SYSTEM_FEATURE_NAMES),
        system_meta_data_feature_values=list(SYSTEM_FEATURE_VALUES),
        model_weights_url=url,
        model_weights_filepath=filepath,
        model_server_enabled=True,
        timeout=5,
    )


def test_node_platform_power_from_server(server):
    url, _ = server
    r = gen_linear_regressor(ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE, url)
    r.start()
    r.reset_sample_idx()
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    powers = r.get_platform_power(False)
    assert powers == [4.0]


def test_node_components_power_from_server(server):
    url, _ = server
    r = gen_linear_regressor(ModelOutputType.ABS_POWER, COMPONENT_ENERGY_SOURCE, url)
    r.start()
    r.reset_sample_idx()
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    comp = r.get_components_power(False)
    assert len(comp) == 1
    assert comp[0].core == 4000
    assert comp[0].dram == 4000
    assert comp[0].pkg == 4000


def test_container_platform_power_from_server(server):
    url, _ = server
    r = gen_linear_regressor(ModelOutputType.DYN_POWER, PLATFORM_ENERGY_SOURCE, url)
    r.start()
    r.reset_sample_idx()
    for values in CONTAINER_FEATURE_VALUES:
        r.add_container_feature_values(values)
    powers = r.get_platform_power(False)
    assert len(powers) == len(CONTAINER_FEATURE_VALUES)
    assert powers[0] == 3.0


def test_container_components_power_from_server(server):
    url, _ = server
    r = gen_linear_regressor(ModelOutputType.DYN_POWER, COMPONENT_ENERGY_SOURCE, url)
    r.start()
    r.reset_sample_idx()
    for values in CONTAINER_FEATURE_VALUES:
        r.add_container_feature_values(values)
    comp = r.get_components_power(False)
    assert len(comp) == len(CONTAINER_FEATURE_VALUES)
    assert comp[0].core == 3000


def test_server_request_content(server):
    url, handler = server
    r = gen_linear_regressor(ModelOutputType.DYN_POWER, COMPONENT_ENERGY_SOURCE, url)
    r.trainer_name = "SGDRegressorTrainer"
    r.start()
    assert r.is_enabled() is True
    req = handler.requests[-1]
    assert req["metrics"] == CONTAINER_FEATURE_NAMES + SYSTEM_FEATURE_NAMES
    assert req["output_type"] == "DynPower"
    assert req["source"] == "rapl"
    assert req["node_type"] == 1
    assert req["weight"] is True
    assert req["trainer_name"] == "SGDRegressorTrainer"
    r.add_container_feature_values(CONTAINER_FEATURE_VALUES[0])
    assert [c.core for c in r.get_components_power(False)] == [3000]


def test_idle_power_uses_zero_usage(server):
    url, _ = server
    r = gen_linear_regressor(ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE, url)
    r.start()
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    assert r.get_platform_power(True) == [2.0]


def test_weights_from_initial_url(server):
    url, _ = server
    r = gen_linear_regressor(
        ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE, url=url + "/platform.json"
    )
    r.start()
    assert r.is_enabled() is True
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    assert r.get_platform_power(False) == [4.0]


def test_weights_from_local_file(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text(json.dumps(COMPONENT_WEIGHTS))
    r = gen_linear_regressor(
        ModelOutputType.DYN_POWER, COMPONENT_ENERGY_SOURCE, filepath=str(path)
    )
    r.model_server_enabled = False
    r.start()
    for values in CONTAINER_FEATURE_VALUES:
        r.add_container_feature_values(values)
    comp = r.get_components_power(False)
    assert [c.core for c in comp] == [3000, 3000]


def test_server_failure_falls_back_to_local(server, tmp_path):
    url, handler = server
    handler.post_status = 500
    path = tmp_path / "weights.json"
    path.write_text(json.dumps(PLATFORM_WEIGHTS))
    r = gen_linear_regressor(
        ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE, url, filepath=str(path)
    )
    r.start()
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    assert r.get_platform_power(False) == [4.0]


def test_error_body_from_url_is_not_valid_weights(server, tmp_path):
    url, _ = server
    path = tmp_path / "weights.json"
    path.write_text(json.dumps(PLATFORM_WEIGHTS))
    r = gen_linear_regressor(
        ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE,
        url=url + "/missing", filepath=str(path),
    )
    r.model_server_enabled = False
    with pytest.raises(PowerModelError, match="unmarshal"):
        r.start()
    assert r.is_enabled() is False


def test_start_without_any_source_fails(tmp_path):
    r = gen_linear_regressor(
        ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE,
        filepath=str(tmp_path / "absent.json"),
    )
    r.model_server_enabled = False
    with pytest.raises(PowerModelError):
        r.start()
    assert r.is_enabled() is False


def test_invalid_local_json_fails(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text("not json")
    r = gen_linear_regressor(
        ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE, filepath=str(path)
    )
    r.model_server_enabled = False
    with pytest.raises(PowerModelError, match="unmarshal"):
        r.start()


def test_disabled_model_raises():
    r = gen_linear_regressor(ModelOutputType.DYN_POWER, PLATFORM_ENERGY_SOURCE)
    with pytest.raises(PowerModelError, match="disabled power model call: DynPower"):
        r.get_platform_power(False)
    with pytest.raises(PowerModelError, match="disabled"):
        r.get_components_power(False)


def test_platform_weights_missing(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text(json.dumps(COMPONENT_WEIGHTS))
    r = gen_linear_regressor(
        ModelOutputType.DYN_POWER, COMPONENT_ENERGY_SOURCE, filepath=str(path)
    )
    r.model_server_enabled = False
    r.start()
    r.add_container_feature_values([1.0] * 14)
    with pytest.raises(PowerModelError, match="not valid"):
        r.get_platform_power(False)


def test_reset_overwrites_samples(tmp_path):
    path = tmp_path / "weights.json"
    path.write_text(json.dumps(PLATFORM_WEIGHTS))
    r = gen_linear_regressor(
        ModelOutputType.ABS_POWER, PLATFORM_ENERGY_SOURCE, filepath=str(path)
    )
    r.model_server_enabled = False
    r.start()
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    r.add_node_feature_values(NODE_FEATURE_VALUES)
    r.reset_sample_idx()
    r.add_node_feature_values([5.0] * 14)
    assert r.get_platform_power(False) == [7.0]


def test_weights_round_trip():
    data = gen_weights(CORE_NUMERICAL)
    weights = ModelWeights.from_dict(data)
    assert weights.bias_weight == 1.0
    assert weights.categorical_variables["cpu_architecture"]["Sandy Bridge"] == CategoricalFeature(1.0)
    assert weights.numerical_variables["cpu_cycles"] == NormalizedNumericalFeature(scale=1.0, weight=1.0)
    assert ModelWeights.from_dict(weights.to_dict()) == weights


def test_predict_skips_zero_weights_and_unknown_categories():
    weights = ModelWeights(
        bias_weight=0.5,
        categorical_variables={"cpu_architecture": {"Sky Lake": CategoricalFeature(2.0)}},
        numerical_variables={
            "a": NormalizedNumericalFeature(scale=2.0, weight=3.0),
            "b": NormalizedNumericalFeature(scale=0.0, weight=0.0),
        },
    )
    powers = weights.predict(["a", "b", "c"], [[4.0, 9.0, 9.0]], ["cpu_architecture"], ["Sandy Bridge"])
    assert powers == [6.5]


def test_predict_zero_scale_gives_infinity():
    weights = ModelWeights(numerical_variables={"a": NormalizedNumericalFeature(scale=0.0, weight=1.0)})
    powers = weights.predict(["a"], [[1.0]], [], [])
    assert powers == [math.inf]


def test_predict_short_row_raises():
    weights = ModelWeights(numerical_variables={"b": NormalizedNumericalFeature(scale=1.0, weight=1.0)})
    with pytest.raises(PowerModelError):
        weights.predict(["a", "b"], [[1.0]], [], [])


def test_parse_component_weights_text():
    parsed = parse_component_weights(json.dumps(COMPONENT_WEIGHTS))
    assert set(parsed) == {CORE, DRAM}
    assert parsed[DRAM].numerical_variables["cache_miss"].weight == 1.0


def test_parse_component_weights_rejects_non_object():
    with pytest.raises(PowerModelError):
        parse_component_weights("[1, 2]")