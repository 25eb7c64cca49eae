import json
from pathlib import Path

import pytest

import pos_cdc_bridge.admin as admin
from pos_cdc_bridge.cdc.checkpoint import PersistentWatermarkStore
from pos_cdc_bridge.config import Settings


@pytest.fixture()
def watermark_path(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "wm.json"
    settings = Settings(
        venue_id="venue-1",
        db_host="localhost",
        db_port=5432,
        db_name="pos",
        db_user="postgres",
        db_password="",
        db_schema="pos_events",
        rabbitmq_url="amqp://localhost",
        exchange="pos.events",
        watermark_path=path,
    )
    monkeypatch.setattr(admin, "load_settings", lambda: settings)
    return path


@pytest.mark.unit
def test_dry_run_prints_ddl_without_connecting(watermark_path, monkeypatch, capsys):
    def no_connect(_settings):
        raise AssertionError("dry run must not connect")

    monkeypatch.setattr(admin, "connect_from_settings", no_connect)

    assert admin.main(["install-tracking", "--dry-run"]) == 0

    output = capsys.readouterr().out
    assert "CREATE SCHEMA IF NOT EXISTS pos_events;" in output
    assert "CREATE TRIGGER ticket_events_change_log" in output


@pytest.mark.unit
def test_show_watermarks_lists_every_table(watermark_path, capsys):
    watermark_path.write_text(json.dumps({"TicketEvents": 102}))

    assert admin.main(["show-watermarks"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert "TicketEvents: 102" in lines
    assert "TurnoEvents: <unset>" in lines


@pytest.mark.unit
def test_reset_watermark_requires_matching_expected(watermark_path, capsys):
    PersistentWatermarkStore(watermark_path).save("PaymentEvents", 300)

    assert admin.main(["reset-watermark", "PaymentEvents", "--expected", "299"]) == 2
    assert "Refusing to reset PaymentEvents" in capsys.readouterr().err

    assert (
        admin.main(
            ["reset-watermark", "PaymentEvents", "--expected", "300", "--to", "250"]
        )
        == 0
    )
    assert PersistentWatermarkStore(watermark_path).load("PaymentEvents") == 250
