"""Configuration model, loader and validator tests"""

from pathlib import Path

import pytest

from fieldpoll.common.config import (
    ByteOrder,
    DataType,
    ModbusRTUSettings,
    ModbusTCPSettings,
    Parity,
    RegisterType,
    SourceConfig,
    SourceType,
    WordOrder,
    load_engine_config,
    parse_duration,
)
from fieldpoll.common.exceptions import ConfigError
from fieldpoll.conftest import make_config, make_rtu_source, make_tcp_source, make_variable
from fieldpoll.services.config import ConfigValidator, load_config_data, load_config_file

SAMPLE_YAML = """
logLevel: debug
sources:
  - name: meter-1
    type: tcp
    config:
      host: 192.168.1.30
      port: 502
      unitId: 1
      timeout: 200ms
      pollInterval: 1s
      retryInterval: 5s
      byteOrder: big
      wordOrder: low-word-first
  - name: rs485-1
    type: rtu
    config:
      device: /dev/ttyUSB0
      baudRate: 19200
      parity: even
      unitId: 3
variables:
  - name: active_power
    source: meter-1
    dataType: float32
    address: 100
    registerType: input
    tags: [power, meter]
  - name: status
    source: rs485-1
    dataType: uint16
    address: 0
"""


@pytest.mark.parametrize("text,seconds", [
    ("5s", 5.0),
    ("500ms", 0.5),
    ("1m30s", 90.0),
    ("1.5h", 5400.0),
    ("250us", 0.00025),
    ("2", 2.0),
    (3, 3.0),
    (0.25, 0.25),
])
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "abc", "5x", "s5", "5s garbage", True, None])
def test_parse_duration_rejects(text):
    with pytest.raises(ConfigError):
        parse_duration(text)


def test_load_yaml_sample():
    config = load_config_data(SAMPLE_YAML)

    assert config.log_level == "DEBUG"
    assert [s.name for s in config.sources] == ["meter-1", "rs485-1"]

    tcp = config.get_source("meter-1")
    assert tcp.type == SourceType.TCP
    assert isinstance(tcp.settings, ModbusTCPSettings)
    assert tcp.timeout == pytest.approx(0.2)
    assert tcp.poll_interval == 1.0
    assert tcp.byte_order == ByteOrder.BIG
    assert tcp.word_order == WordOrder.LOW_WORD_FIRST

    rtu = config.get_source("rs485-1")
    assert isinstance(rtu.settings, ModbusRTUSettings)
    assert rtu.settings.baud_rate == 19200
    assert rtu.settings.parity == Parity.EVEN
    assert rtu.unit_id == 3

    power = config.variables[0]
    assert power.data_type == DataType.FLOAT32
    assert power.register_type == RegisterType.INPUT
    assert power.function_code == 0x04
    assert power.register_count == 2
    assert power.tags == frozenset({"power", "meter"})


def test_variant_must_match_type():
    with pytest.raises(ConfigError):
        SourceConfig(name="x", type=SourceType.RTU, settings=ModbusTCPSettings(host="h"))


def test_unknown_data_type_rejected():
    data = {
        "sources": [{"name": "a", "type": "tcp", "config": {"host": "h"}}],
        "variables": [{"name": "v", "source": "a", "dataType": "int128", "address": 0}],
    }
    with pytest.raises(ConfigError):
        load_engine_config(data)


def test_variable_requires_address():
    data = {
        "sources": [{"name": "a", "type": "tcp", "config": {"host": "h"}}],
        "variables": [{"name": "v", "source": "a", "dataType": "uint16"}],
    }
    with pytest.raises(ConfigError):
        load_engine_config(data)


def test_unknown_source_reference_fails_validation():
    text = SAMPLE_YAML.replace("source: rs485-1", "source: missing")
    with pytest.raises(ConfigError) as exc:
        load_config_data(text)
    assert any("unknown source" in e for e in exc.value.errors)


def test_tcp_validation_rules():
    settings = ModbusTCPSettings(host="", port=70000, unit_id=300, timeout=0)
    errors = settings.validate()
    assert len(errors) == 4


def test_rtu_validation_rules():
    source = make_rtu_source(baud_rate=12345, data_bits=6, stop_bits=3, unit_id=0)
    errors = source.validate()
    assert len(errors) == 4
    assert all(e.startswith("source 'rs485-1'") for e in errors)


def test_rtu_defaults_are_valid():
    assert make_rtu_source().validate() == []


def test_validator_duplicate_names():
    config = make_config(
        [make_tcp_source("a"), make_tcp_source("a")],
        [make_variable("v", "a"), make_variable("v", "a", address=1)],
    )
    ok, errors = ConfigValidator().validate(config)
    assert not ok
    assert "Duplicate source name: a" in errors
    assert any("Duplicate variable" in e for e in errors)


def test_validator_register_overflow():
    config = make_config(
        [make_tcp_source("a")],
        [make_variable("v", "a", data_type=DataType.UINT32, address=65535)],
    )
    ok, errors = ConfigValidator().validate(config)
    assert not ok
    assert "runs past register 65535" in errors[0]


def test_validator_conflicting_serial_lines():
    config = make_config(
        [make_rtu_source("a", baud_rate=9600), make_rtu_source("b", baud_rate=19200)],
        [],
    )
    ok, errors = ConfigValidator().validate(config)
    assert not ok
    assert "conflict" in errors[0]


def test_validator_duplicate_unit_on_serial_line():
    config = make_config(
        [make_rtu_source("a", unit_id=5), make_rtu_source("b", unit_id=5)],
        [make_variable("v", "a"), make_variable("w", "b")],
    )
    ok, errors = ConfigValidator().validate(config)
    assert not ok
    assert errors == ["source 'b': unitId 5 on /dev/ttyUSB0 is already used by 'a'"]


def test_validator_shared_serial_line_distinct_units():
    config = make_config(
        [make_rtu_source("a", unit_id=1), make_rtu_source("b", unit_id=2)],
        [make_variable("v", "a"), make_variable("w", "b")],
    )
    assert ConfigValidator().validate(config) == (True, [])


def _tagged(tags):
    return {
        "sources": [{"name": "a", "type": "tcp", "config": {"host": "h"}}],
        "variables": [{"name": "v", "source": "a", "address": 0, "tags": tags}],
    }


def test_single_string_tag():
    config = load_engine_config(_tagged("power"))
    assert config.variables[0].tags == frozenset({"power"})


@pytest.mark.parametrize("tags,expected", [
    (None, frozenset()),
    ([], frozenset()),
    (["power", "meter"], frozenset({"power", "meter"})),
    ([1, 2], frozenset({"1", "2"})),
])
def test_tag_lists(tags, expected):
    assert load_engine_config(_tagged(tags)).variables[0].tags == expected


@pytest.mark.parametrize("tags", [{"a": 1}, 5])
def test_tags_must_be_a_list(tags):
    with pytest.raises(ConfigError):
        load_engine_config(_tagged(tags))


def test_validator_no_sources():
    ok, errors = ConfigValidator().validate(make_config([], []))
    assert not ok
    assert errors == ["No sources configured"]


def test_load_config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(SAMPLE_YAML)
    config = load_config_file(path)
    assert len(config.variables) == 2


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config_file(tmp_path / "nope.yaml")


def test_load_invalid_yaml():
    with pytest.raises(ConfigError):
        load_config_data("sources: [unclosed")


def test_example_config_is_valid():
    path = Path(__file__).resolve().parent.parent / "config.example.yaml"
    if not path.exists():
        pytest.skip("example config not shipped with this install")
    config = load_config_file(path)
    assert {s.type for s in config.sources} == {SourceType.TCP, SourceType.RTU}
    assert config.get_source("inverter-rs485").word_order == WordOrder.LOW_WORD_FIRST
