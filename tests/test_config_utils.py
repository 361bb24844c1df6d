import json

import numpy as np
import pytest

from config.config import BallotConfig, ParameterConfig, SystemConfig, load_config, save_config
from group.group_arithmetic import ElementModQ, InvalidInputError
from utils.utils import (
    PerformanceMonitor,
    create_performance_report,
    create_results_summary,
    format_bytes,
    format_duration,
    save_results,
    to_serializable,
)


def _config(tmp_path, **kwargs):
    return SystemConfig(log_dir=tmp_path / "logs", results_dir=tmp_path / "results", **kwargs)


def test_config_round_trip(tmp_path):
    config = _config(
        tmp_path,
        parameters=ParameterConfig(num_guardians=5, threshold=3),
        ballots=BallotConfig(device_ids=["north", "south"], tally_shards=4),
        log_level="DEBUG",
    )
    path = tmp_path / "config.yaml"
    save_config(config, path)

    loaded = load_config(path)
    assert loaded.parameters == config.parameters
    assert loaded.ballots == config.ballots
    assert loaded.log_level == "DEBUG"
    assert loaded.results_dir == config.results_dir


def test_default_group_not_written(tmp_path):
    path = tmp_path / "config.yaml"
    save_config(_config(tmp_path), path)
    assert "p:" not in path.read_text()


def test_missing_config_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config(tmp_path / "absent.yaml")
    assert config.parameters == ParameterConfig()
    assert config.ballots.device_ids == ["device-1"]


@pytest.mark.parametrize("text", ["parameters: [unclosed", "- just\n- a list\n"])
def test_malformed_config_uses_defaults(tmp_path, monkeypatch, text):
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "broken.yaml"
    path.write_text(text)
    assert load_config(path).parameters == ParameterConfig()


def test_custom_group_parameters():
    custom = ParameterConfig(version="test", p_hex="17", q_hex="0B", r_hex="02", g_hex="04",
                             num_guardians=2, threshold=2)
    params = custom.to_parameters()
    assert (params.p, params.q, params.n, params.k) == (23, 11, 2, 2)
    assert not custom.is_default_group()


def test_malformed_custom_group_rejected():
    bad = ParameterConfig(version="test", p_hex="17", q_hex="0B", r_hex="02", g_hex="05")
    with pytest.raises(InvalidInputError):
        bad.to_parameters()


def test_performance_monitor_summary():
    monitor = PerformanceMonitor()
    for _ in range(3):
        with monitor.start_operation("ballot_encryption", device="d"):
            pass
    with pytest.raises(ValueError):
        with monitor.start_operation("tally_decryption"):
            raise ValueError("boom")

    summary = monitor.get_summary()
    assert summary['total_operations'] == 4
    assert summary['operations']['ballot_encryption']['count'] == 3
    assert monitor.metrics[0].additional_data == {'device': "d", 'exception': False}
    assert monitor.metrics[-1].additional_data['exception'] is True

    monitor.reset()
    assert monitor.get_summary()['total_operations'] == 0


def test_save_metrics(tmp_path):
    monitor = PerformanceMonitor()
    with monitor.start_operation("verification"):
        pass
    path = tmp_path / "metrics" / "run.json"
    monitor.save_metrics(path)
    data = json.loads(path.read_text())
    assert data['summary']['operations']['verification']['count'] == 1


@pytest.mark.parametrize("seconds,expected", [
    (0.25, "250.0ms"),
    (12.5, "12.50s"),
    (125, "2m 5.0s"),
    (3725, "1h 2m 5.0s"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


def test_format_bytes():
    assert format_bytes(512) == "512.0B"
    assert format_bytes(1536) == "1.5KB"
    assert format_bytes(3 * 1024 ** 3) == "3.0GB"


def test_to_serializable(params):
    value = {
        'nonce': params.element_q(5),
        'hash': b'\x01\x02',
        'counts': np.array([1, 2]),
        'total': np.int64(3),
    }
    result = to_serializable(value)
    assert result['nonce'] == "00" * 31 + "05"
    assert len(result['nonce']) == 64
    assert result['hash'] == "0102"
    assert result['counts'] == [1, 2]
    assert result['total'] == 3
    assert to_serializable(ElementModQ(1, 11)) == "00" * 31 + "01"


def test_save_results_writes_summary(tmp_path):
    results = {
        'election': {'election_id': "e1"},
        'tally': {'mayor': {'alice': 3, 'bob': 1}},
        'verification': {'PARAMETERS': True},
    }
    path = tmp_path / "out" / "e1.json"
    save_results(results, path)

    saved = json.loads(path.read_text())
    assert saved['data']['tally']['mayor']['alice'] == 3
    summary = (tmp_path / "out" / "e1_summary.txt").read_text()
    assert "alice: 3 votes (75.0%)" in summary
    assert "PARAMETERS: PASSED" in summary


def test_results_summary_without_tally():
    summary = create_results_summary({'performance_metrics': {'total_duration': 1.5}})
    assert "ELECTION TALLY" not in summary
    assert "total_duration: 1.5000" in summary


def test_performance_report_lists_stages():
    monitor = PerformanceMonitor()
    assert "No stages were timed." in create_performance_report(monitor)

    with monitor.start_operation("key_generation"):
        pass
    with pytest.raises(RuntimeError):
        with monitor.start_operation("key_generation"):
            raise RuntimeError("guardian failed")

    report = create_performance_report(monitor)
    assert "key_generation" in report
    assert "1 of 2 runs raised" in report
    assert monitor.get_summary()['operations']['key_generation']['failures'] == 1
