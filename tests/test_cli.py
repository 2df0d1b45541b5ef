import asyncio
import json
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

from geoenrich import main as app_main
from geoenrich.admin import cli
from geoenrich.observability.log import configure_logging
from geoenrich.orchestrator.queue import read_jobs

from stubs import IP_API_COM_PAYLOAD


def _settings(tmp_path: Path) -> dict:
    data_root = tmp_path / "data"
    return {
        "http": {"user_agent": "test-agent", "timeout_seconds": 5, "max_connections": 2},
        "queue": {
            "path": str(data_root / "queue" / "jobs.jsonl"),
            "base_delay_seconds": 0.01,
            "max_attempts": 3,
            "job_timeout_seconds": 5,
            "concurrency": 1,
        },
        "providers": {"google_api_key_env": "GEOENRICH_TEST_GOOGLE_KEY"},
        "storage": {
            "updates_path": str(data_root / "updates" / "locations.jsonl"),
            "metrics_dir": str(data_root / "metrics"),
        },
    }


def _transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "ipapi.co":
            return httpx.Response(503)
        if request.url.host == "ip-api.com":
            return httpx.Response(200, json=IP_API_COM_PAYLOAD)
        return httpx.Response(500)

    return httpx.MockTransport(handler)


@pytest.fixture()
def settings(tmp_path, monkeypatch):
    payload = _settings(tmp_path)
    monkeypatch.setattr(app_main, "load_settings", lambda _path: payload)
    monkeypatch.setattr(app_main, "uvloop", None)
    monkeypatch.delenv("GEOENRICH_TEST_GOOGLE_KEY", raising=False)
    configure_logging(Path("config/logging.yaml"))
    return payload


def test_lookup_prints_location(settings, capsys):
    args = SimpleNamespace(ip="::ffff:5.6.7.8")
    asyncio.run(app_main.run_lookup(args, settings, transport=_transport()))
    output = json.loads(capsys.readouterr().out)
    assert output["location"]["provider"] == "ip-api.com"
    assert output["location"]["countryCode"] == "DE"


def test_lookup_private_ip_prints_null(settings, capsys):
    asyncio.run(app_main.run_lookup(SimpleNamespace(ip="192.168.0.10"), settings, transport=_transport()))
    assert json.loads(capsys.readouterr().out)["location"] is None


def test_enqueue_and_status_commands(settings, capsys):
    app_main.main(["enqueue", "--record-id", "c1", "--ip", "8.8.8.8"])
    enqueued = json.loads(capsys.readouterr().out)
    assert enqueued["pending"] == 1

    app_main.main(["status"])
    status = json.loads(capsys.readouterr().out)
    assert status["pending"] == 1
    assert status["retrying"] == 0


def test_drain_writes_updates_and_metrics(settings, capsys):
    app_main.main(["enqueue", "--record-id", "c1", "--ip", "8.8.8.8"])
    app_main.main(["enqueue", "--record-id", "c2", "--ip", "10.0.0.1"])
    capsys.readouterr()

    args = SimpleNamespace(concurrency=None, updates=None)
    summary = asyncio.run(app_main.run_drain(args, settings, transport=_transport()))

    assert summary["jobs_completed"] == 1
    assert summary["jobs_soft_failed"] == 1
    assert read_jobs(Path(settings["queue"]["path"])) == []
    lines = Path(settings["storage"]["updates_path"]).read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    row = json.loads(lines[0])
    assert row["record_id"] == "c1"
    assert row["location"]["provider"] == "ip-api.com"
    assert list(Path(settings["storage"]["metrics_dir"]).glob("drain_*.json"))

    capsys.readouterr()
    admin_args = cli.build_parser().parse_args(["updates", "--updates", settings["storage"]["updates_path"]])
    cli.cmd_updates(admin_args)
    report = json.loads(capsys.readouterr().out)
    assert report == {"updates": 1, "records": 1, "providers": {"ip-api.com": 1}}


def test_admin_queue_lists_jobs(settings, capsys):
    app_main.main(["enqueue", "--record-id", "c3", "--ip", "1.1.1.1"])
    capsys.readouterr()
    args = cli.build_parser().parse_args(["queue", "--queue", settings["queue"]["path"], "--record-id", "c3"])
    cli.cmd_queue(args)
    output = json.loads(capsys.readouterr().out)
    assert [row["ip_address"] for row in output["jobs"]] == ["1.1.1.1"]
