"""Domain payload builders, one per tracked table kind."""

from __future__ import annotations

from datetime import date, datetime, time as dt_time, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping

from ..db.registry import KIND_PAYMENT, KIND_PRODUCT, KIND_SHIFT, KIND_TICKET


def _number(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return value


def _integer(value: Any) -> Any:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return value


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, (date, dt_time)):
        return value.isoformat()
    return value


def _put_optional(message: Dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        message[key] = value


def build_ticket_message(row: Mapping[str, Any], venue_id: str) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "venueId": venue_id,
        "ticket": row.get("folio"),
        "table": row.get("table_number"),
        "order": _integer(row.get("order_number")),
        "status": row.get("event_type"),
        "idWaiter": row.get("waiter_id"),
        "waiterName": row.get("waiter_name"),
        "operation": row.get("operation_type"),
        "uniqueCodeFromPos": row.get("unique_code"),
    }
    _put_optional(message, "descuento", _number(row.get("descuento")))
    _put_optional(message, "total", _number(row.get("total")))

    if row.get("is_split_operation"):
        message["isSplit"] = True
        role = row.get("split_role")
        if role == "PARENT":
            message["splitType"] = "ORIGINAL"
            message["relatedFolio"] = row.get("split_folios")
            message["splitTables"] = row.get("split_tables")
        elif role == "CHILD":
            message["splitType"] = "NEW"
            message["relatedFolio"] = row.get("parent_folio")
            message["originalTable"] = row.get("original_table")

    # RENAMED and PRINTED are published as OPEN for downstream compatibility.
    if row.get("event_type") == "RENAMED":
        message["status"] = "OPEN"
        message["isRenamed"] = True
        message["originalTable"] = row.get("original_table")
    elif row.get("event_type") == "PRINTED":
        message["status"] = "OPEN"
        message["isPrinted"] = True
    return message


def build_product_message(row: Mapping[str, Any], venue_id: str) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "venueId": venue_id,
        "ticket": row.get("folio"),
        "table": row.get("table_number"),
        "order": _integer(row.get("order_number")),
        "status": row.get("status"),
        "idproducto": row.get("id_producto"),
        "nombre": row.get("nombre_producto"),
        "movimiento": row.get("movimiento"),
        "cantidad": _number(row.get("cantidad")),
        "precio": _number(row.get("precio")),
        "idWaiter": row.get("waiter_id"),
        "waiterName": row.get("waiter_name"),
        "operation": row.get("operation_type"),
        "uniqueCodeFromPos": row.get("unique_code"),
        "uniqueBillCodeFromPos": row.get("unique_bill_code_pos"),
    }
    _put_optional(message, "descuento", _number(row.get("descuento")))
    _put_optional(message, "hora", _iso(row.get("hora")))
    _put_optional(message, "modificador", row.get("modificador"))
    _put_optional(message, "clasificacion", row.get("clasificacion"))
    _put_optional(message, "isSplitTable", row.get("is_split_table"))
    _put_optional(message, "mainTable", row.get("main_table"))
    _put_optional(message, "splitSuffix", row.get("split_suffix"))
    return message


def build_payment_message(row: Mapping[str, Any], venue_id: str) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "venueId": venue_id,
        "folio": row.get("folio"),
        "idFormaDePago": row.get("id_forma_de_pago"),
        "table": row.get("table_number"),
        "operation": row.get("operation_type"),
        "status": row.get("status"),
    }
    _put_optional(message, "importe", _number(row.get("importe")))
    _put_optional(message, "propina", _number(row.get("propina")))
    _put_optional(message, "referencia", row.get("referencia"))
    _put_optional(message, "uniqueCodeFromPos", row.get("workspace_id"))
    _put_optional(message, "uniqueBillCodePos", row.get("unique_bill_code_pos"))
    _put_optional(message, "method", row.get("method"))
    _put_optional(message, "order", _integer(row.get("order_number")))
    _put_optional(message, "is_split_table", row.get("is_split_table"))
    _put_optional(message, "main_table", row.get("main_table"))
    _put_optional(message, "split_suffix", row.get("split_suffix"))
    return message


def build_shift_message(row: Mapping[str, Any], venue_id: str) -> Dict[str, Any]:
    return {
        "venueId": venue_id,
        "idturnointerno": row.get("id_turno_interno"),
        "idturno": row.get("id_turno"),
        "fondo": _number(row.get("fondo")),
        "apertura": _iso(row.get("apertura")),
        "cierre": _iso(row.get("cierre")),
        "cajero": row.get("cajero"),
        "efectivo": _number(row.get("efectivo")),
        "tarjeta": _number(row.get("tarjeta")),
        "vales": _number(row.get("vales")),
        "credito": _number(row.get("credito")),
        "corte_enviado": row.get("corte_enviado"),
        "status": row.get("status"),
        "operation": row.get("operation_type"),
    }


_BUILDERS: Dict[str, Callable[[Mapping[str, Any], str], Dict[str, Any]]] = {
    KIND_TICKET: build_ticket_message,
    KIND_PRODUCT: build_product_message,
    KIND_PAYMENT: build_payment_message,
    KIND_SHIFT: build_shift_message,
}


def build_message(kind: str, row: Mapping[str, Any], venue_id: str) -> Dict[str, Any]:
    try:
        builder = _BUILDERS[kind]
    except KeyError:
        raise ValueError(f"no message builder for table kind {kind!r}") from None
    return builder(row, venue_id)


__all__ = [
    "build_message",
    "build_payment_message",
    "build_product_message",
    "build_shift_message",
    "build_ticket_message",
]
