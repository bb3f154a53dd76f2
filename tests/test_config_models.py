from __future__ import annotations

import orjson
import pytest

from aiostreamrelay.__main__ import parse_config
from aiostreamrelay.models import RelayConfig


def test_defaults() -> None:
    config = RelayConfig(input_url="alsa_output.monitor")

    assert config.host == "localhost"
    assert config.port == 8080
    assert config.input_format == "pulse"
    assert config.queue_size == 512
    assert config.encoder == "libmp3lame"
    assert config.bit_rate == 96_000
    assert config.content_type == "audio/mpeg"


def test_json_roundtrip_omits_unset_name() -> None:
    config = RelayConfig(input_url="song.mp3", input_format="mp3", port=9000)

    data = orjson.loads(config.to_json())
    assert "advertise_name" not in data
    assert RelayConfig.from_json(config.to_json()) == config


@pytest.mark.parametrize(
    "overrides",
    [
        {"input_url": ""},
        {"input_format": ""},
        {"host": ""},
        {"port": 70000},
        {"queue_size": 0},
        {"bit_rate": -1},
        {"restart_backoff_min": 2.0, "restart_backoff_max": 1.0},
        {"write_timeout": 0},
    ],
)
def test_invalid_values(overrides: dict) -> None:
    values = {"input_url": "in"} | overrides
    with pytest.raises(ValueError):
        RelayConfig(**values)


def test_parse_flags() -> None:
    config = parse_config(
        [
            "--input",
            "song.mp3",
            "--format",
            "mp3",
            "--port",
            "9001",
            "--queue-size",
            "64",
            "--no-pacing",
            "--verbose",
        ]
    )

    assert config.input_url == "song.mp3"
    assert config.input_format == "mp3"
    assert config.port == 9001
    assert config.queue_size == 64
    assert config.pacing is False
    assert config.verbose is True
    assert config.host == "localhost"
    assert config.advertise is False


def test_flags_override_config_file(tmp_path) -> None:
    path = tmp_path / "relay.json"
    path.write_bytes(
        orjson.dumps({"input_url": "monitor", "port": 9100, "bit_rate": 128000, "host": "0.0.0.0"})
    )

    config = parse_config(["--config", str(path), "--port", "9200"])

    assert config.input_url == "monitor"
    assert config.port == 9200
    assert config.bit_rate == 128000
    assert config.host == "0.0.0.0"
    assert config.input_format == "pulse"


def test_missing_input_is_a_usage_error(capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        parse_config([])

    assert exc_info.value.code == 2
    assert "--input is required" in capsys.readouterr().err


def test_empty_host_is_a_usage_error() -> None:
    with pytest.raises(SystemExit) as exc_info:
        parse_config(["--input", "x", "--host", ""])

    assert exc_info.value.code == 2


def test_invalid_value_is_a_usage_error() -> None:
    with pytest.raises(SystemExit) as exc_info:
        parse_config(["--input", "x", "--queue-size", "0"])

    assert exc_info.value.code == 2


def test_unreadable_config_file(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    with pytest.raises(SystemExit):
        parse_config(["--config", str(path)])
