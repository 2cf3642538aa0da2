"""Tests for main.py module."""

import json
import logging
import signal
import threading
from unittest.mock import patch

import pytest

import main as main_module
from collector import REASON_DURATION


def write_runtime_config(tmp_path, **overrides):
    """Write a runtime YAML config into tmp_path and return its path."""
    sections = {
        "thanos": "thanos:\n  url: thanos.example.com\n  token: secret\n",
        "cluster": (
            "cluster:\n  name: test-cluster\n  type: ran\n"
            "  reserved_cpus: 0-1\n  isolated_cpus: 2-15\n"
        ),
        "sampling": "sampling:\n  frequency: 10\n  duration: 30s\n",
        "database": f"database:\n  type: sqlite\n  path: {tmp_path / 'data' / 'kpi.db'}\n",
        "logging": f"logging:\n  file: {tmp_path / 'kpi.log'}\n",
    }
    sections.update(overrides)
    path = tmp_path / "runtime.yaml"
    path.write_text("".join(sections.values()))
    return str(path)


def write_kpis(tmp_path, kpis=None):
    """Write a KPI definitions file into tmp_path and return its path."""
    if kpis is None:
        kpis = [
            {"id": "node-cpu", "promquery": "sum(rate(node_cpu_seconds_total[1m]))"},
            {
                "id": "reserved-cpu",
                "promquery": 'sum(rate(node_cpu_seconds_total{cpu=~"{{RESERVED_CPUS}}"}[1m]))',
                "sample-frequency": "5s",
            },
        ]
    path = tmp_path / "kpis.json"
    path.write_text(json.dumps({"kpis": kpis}))
    return str(path)


@pytest.fixture
def restore_signal_handlers():
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


class TestParseArgs:
    def test_requires_config_and_kpis_file(self):
        with pytest.raises(SystemExit):
            main_module.parse_args(["--config", "runtime.yaml"])

    def test_parses_flags(self):
        args = main_module.parse_args(
            ["--config", "runtime.yaml", "--kpis-file", "kpis.json", "--debug"]
        )
        assert args.config == "runtime.yaml"
        assert args.kpis_file == "kpis.json"
        assert args.debug is True


@pytest.mark.usefixtures("restore_signal_handlers")
class TestMain:
    def test_successful_run_returns_0(self, tmp_path, capsys):
        argv = ["--config", write_runtime_config(tmp_path), "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run", return_value=REASON_DURATION) as run:
            result = main_module.main(argv)

        assert result == 0
        queries, cfg = run.call_args.args
        assert [q.id for q in queries] == ["node-cpu", "reserved-cpu"]
        assert '{cpu=~"0-1"}' in queries[1].promquery
        assert cfg.thanos.url == "https://thanos.example.com"
        assert isinstance(run.call_args.kwargs["interrupt_event"], threading.Event)

        out = capsys.readouterr().out
        assert "Cluster: test-cluster" in out
        assert "All queries completed successfully!" in out

    def test_opens_store_before_run(self, tmp_path):
        argv = ["--config", write_runtime_config(tmp_path), "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run", return_value=REASON_DURATION):
            main_module.main(argv)

        assert (tmp_path / "data" / "kpi.db").exists()

    def test_invalid_config_returns_1(self, tmp_path, capsys):
        config_path = write_runtime_config(tmp_path, thanos="thanos:\n  token: secret\n")
        argv = ["--config", config_path, "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run") as run:
            result = main_module.main(argv)

        assert result == 1
        run.assert_not_called()
        assert "ERROR: Invalid configuration" in capsys.readouterr().err

    def test_invalid_kpis_returns_1(self, tmp_path, capsys):
        kpis = [{"id": "dup", "promquery": "up"}, {"id": "dup", "promquery": "up"}]
        argv = [
            "--config", write_runtime_config(tmp_path),
            "--kpis-file", write_kpis(tmp_path, kpis),
        ]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run") as run:
            result = main_module.main(argv)

        assert result == 1
        run.assert_not_called()
        assert "duplicate KPI ID: dup" in capsys.readouterr().err

    def test_infinite_duration_returns_1(self, tmp_path, capsys):
        config_path = write_runtime_config(
            tmp_path, sampling="sampling:\n  frequency: 10\n  duration: .inf\n"
        )
        argv = ["--config", config_path, "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run") as run:
            result = main_module.main(argv)

        assert result == 1
        run.assert_not_called()
        assert "sampling.duration" in capsys.readouterr().err

    def test_missing_cpu_lists_return_1(self, tmp_path):
        config_path = write_runtime_config(
            tmp_path, cluster="cluster:\n  name: test-cluster\n"
        )
        argv = ["--config", config_path, "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run") as run:
            result = main_module.main(argv)

        assert result == 1
        run.assert_not_called()

    def test_database_failure_returns_1(self, tmp_path, capsys):
        argv = ["--config", write_runtime_config(tmp_path), "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.database.init_database", side_effect=RuntimeError("stop")), \
             patch("main.collector.run") as run:
            result = main_module.main(argv)

        assert result == 1
        run.assert_not_called()
        assert "ERROR: Failed to initialize database: stop" in capsys.readouterr().err

    def test_frequency_warnings_printed(self, tmp_path, capsys):
        config_path = write_runtime_config(
            tmp_path, sampling="sampling:\n  frequency: 1m\n  duration: 30s\n"
        )
        argv = ["--config", config_path, "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run", return_value=REASON_DURATION):
            main_module.main(argv)

        out = capsys.readouterr().out
        assert "WARNING: KPI 'node-cpu' has frequency 1m0s which exceeds duration 30s" in out
        assert "WARNING: Default sampling frequency 1m0s exceeds duration 30s" in out
        assert "reserved-cpu" not in out

    def test_insecure_tls_warning(self, tmp_path, capsys):
        config_path = write_runtime_config(
            tmp_path,
            thanos="thanos:\n  url: https://thanos.example.com\n  token: t\n  insecure_tls: true\n",
        )
        argv = ["--config", config_path, "--kpis-file", write_kpis(tmp_path)]

        with patch.object(main_module, "setup_logging"), \
             patch("main.collector.run", return_value=REASON_DURATION):
            assert main_module.main(argv) == 0

        assert "TLS certificate verification is disabled" in capsys.readouterr().out

    def test_debug_flag_sets_debug_level(self, tmp_path):
        argv = [
            "--config", write_runtime_config(tmp_path),
            "--kpis-file", write_kpis(tmp_path),
            "--debug",
        ]

        with patch.object(main_module, "setup_logging") as setup, \
             patch("main.collector.run", return_value=REASON_DURATION):
            main_module.main(argv)

        level, log_file = setup.call_args.args
        assert level == logging.DEBUG
        assert log_file == str(tmp_path / "kpi.log")


class TestSignalHandlers:
    def test_signal_sets_interrupt_event(self, restore_signal_handlers):
        interrupt_event = threading.Event()
        main_module.install_signal_handlers(interrupt_event)

        handler = signal.getsignal(signal.SIGTERM)
        handler(signal.SIGTERM, None)

        assert interrupt_event.is_set()
        assert signal.getsignal(signal.SIGINT) is handler

    def test_interrupt_event_wait_exits_immediately(self):
        interrupt_event = threading.Event()
        timer = threading.Timer(0.05, interrupt_event.set)
        timer.start()

        assert interrupt_event.wait(timeout=30)
        timer.join()


class TestSetupLogging:
    def test_writes_records_to_log_file(self, tmp_path, restore_root_logging):
        log_file = tmp_path / "kpi.log"
        main_module.setup_logging(logging.INFO, str(log_file))

        logging.getLogger("collector").info("Duration timer expired")
        logging.getLogger("collector").debug("not written")
        for handler in logging.getLogger().handlers:
            handler.flush()

        text = log_file.read_text()
        assert "collector - INFO - Duration timer expired" in text
        assert "not written" not in text

    def test_appends_to_existing_log(self, tmp_path, restore_root_logging):
        log_file = tmp_path / "kpi.log"
        log_file.write_text("previous run\n")

        main_module.setup_logging(logging.INFO, str(log_file))
        logging.getLogger("main").info("second run")
        for handler in logging.getLogger().handlers:
            handler.flush()

        text = log_file.read_text()
        assert text.startswith("previous run\n")
        assert "second run" in text
