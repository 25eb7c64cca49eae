from datetime import datetime, timezone
from decimal import Decimal

import pytest

from pos_cdc_bridge.cdc.messages import build_message
from pos_cdc_bridge.db.registry import KIND_PAYMENT, KIND_PRODUCT, KIND_SHIFT, KIND_TICKET


@pytest.mark.unit
def test_paid_ticket_message():
    row = {
        "folio": 55,
        "table_number": "12",
        "order_number": "3",
        "event_type": "PAID",
        "operation_type": "UPDATE",
        "waiter_id": 4,
        "waiter_name": "Ana",
        "unique_code": "U-1",
        "total": Decimal("250.00"),
        "descuento": None,
    }

    message = build_message(KIND_TICKET, row, "venue-1")

    assert message["venueId"] == "venue-1"
    assert message["ticket"] == 55
    assert message["order"] == 3
    assert message["status"] == "PAID"
    assert message["total"] == 250.0
    assert isinstance(message["total"], float)
    assert "descuento" not in message
    assert "isSplit" not in message


@pytest.mark.unit
@pytest.mark.parametrize("event_type,flag", [("RENAMED", "isRenamed"), ("PRINTED", "isPrinted")])
def test_renamed_and_printed_tickets_publish_as_open(event_type, flag):
    row = {"folio": 1, "event_type": event_type, "original_table": "7"}

    message = build_message(KIND_TICKET, row, "venue-1")

    assert message["status"] == "OPEN"
    assert message[flag] is True


@pytest.mark.unit
def test_split_parent_and_child_tickets():
    parent = build_message(
        KIND_TICKET,
        {
            "folio": 100,
            "event_type": "OPEN",
            "is_split_operation": True,
            "split_role": "PARENT",
            "split_folios": "101,102",
            "split_tables": "12A,12B",
        },
        "venue-1",
    )
    child = build_message(
        KIND_TICKET,
        {
            "folio": 101,
            "event_type": "OPEN",
            "is_split_operation": True,
            "split_role": "CHILD",
            "parent_folio": 100,
            "original_table": "12",
        },
        "venue-1",
    )

    assert parent["splitType"] == "ORIGINAL"
    assert parent["relatedFolio"] == "101,102"
    assert parent["splitTables"] == "12A,12B"
    assert child["splitType"] == "NEW"
    assert child["relatedFolio"] == 100
    assert child["originalTable"] == "12"


@pytest.mark.unit
def test_product_message_converts_numbers_and_times():
    message = build_message(
        KIND_PRODUCT,
        {
            "folio": 55,
            "status": "PRODUCT_REMOVED",
            "id_producto": 301,
            "cantidad": Decimal("2"),
            "precio": Decimal("19.50"),
            "hora": datetime(2025, 1, 1, 13, 30),
            "is_split_table": False,
        },
        "venue-1",
    )

    assert message["idproducto"] == 301
    assert message["cantidad"] == 2.0
    assert message["precio"] == 19.5
    assert message["hora"] == "2025-01-01T13:30:00+00:00"
    assert message["isSplitTable"] is False
    assert "mainTable" not in message


@pytest.mark.unit
def test_payment_message_omits_absent_optionals():
    message = build_message(
        KIND_PAYMENT,
        {"folio": 9, "id_forma_de_pago": 2, "importe": Decimal("100.10"), "status": "PAID"},
        "venue-1",
    )

    assert message["idFormaDePago"] == 2
    assert message["importe"] == 100.1
    assert "propina" not in message
    assert "order" not in message


@pytest.mark.unit
def test_open_shift_has_null_cierre():
    message = build_message(
        KIND_SHIFT,
        {
            "id_turno_interno": 1,
            "id_turno": 77,
            "apertura": datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc),
            "cierre": None,
            "fondo": Decimal("500"),
            "status": "TURNO_OPENED",
        },
        "venue-1",
    )

    assert message["idturno"] == 77
    assert message["apertura"] == "2025-01-01T08:00:00+00:00"
    assert message["cierre"] is None
    assert message["fondo"] == 500.0


@pytest.mark.unit
def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError):
        build_message("invoice", {}, "venue-1")
