"""Bitrix24 field mappings for the catalog cache.

Defines:
- DEAL_USER_FIELD_LABELS: Settings attributes naming the deal user fields
  discovered by label (wedding date, prepayment, postpayment).
- product_from_crm() / contact_from_crm() / deal_from_crm(): raw REST dicts
  to records; offers_by_parent() groups trade offers under their product.
- contact_to_crm() / deal_to_crm() / line_items_to_crm(): records to REST
  ``fields`` payloads.
- find_deal_user_fields() / find_partition_attribute(): metadata discovery
  from ``crm.deal.fields`` and ``crm.product.fields``.
"""

from __future__ import annotations

import html
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from src.crm_mirror.catalog.schemas import (
    ContactCreate,
    ContactRecord,
    DealCreate,
    DealRecord,
    LineItem,
    PartitionAttribute,
    PartitionValue,
    ProductRecord,
)

_TAG_RE = re.compile(r"<[^>]*>")
_OFFSET_RE = re.compile(r"([+-])(\d{2}):(\d{2})")

WEDDING_DATE = "wedding_date"
PREPAYMENT = "prepayment"
POSTPAYMENT = "postpayment"


# ── Value Helpers ───────────────────────────────────────────────────────────


def strip_html(text: str | None) -> str | None:
    """Remove markup tags and unescape entities."""
    if text is None:
        return None
    return html.unescape(_TAG_RE.sub("", text)).strip()


def _as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, str) and "|" in value:
        # money fields arrive as "15000|KZT"
        value = value.split("|", 1)[0]
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def property_value(raw: Any) -> str | None:
    """Read a product property that may be scalar, ``{"value": ..}`` or a list."""
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if isinstance(raw, dict):
        raw = raw.get("value", raw.get("VALUE"))
    return _as_str(raw)


def parse_tz_offset(tz_offset: str) -> timezone:
    """``+03:00`` -> a fixed-offset timezone."""
    match = _OFFSET_RE.fullmatch(tz_offset.strip())
    if match is None:
        raise ValueError(f"Invalid UTC offset: {tz_offset!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


def format_crm_datetime(value: datetime, tz_offset: str) -> str:
    """Format a datetime as the CRM expects, e.g. ``2024-05-01T10:00:00+03:00``.

    Naive values are taken as local to ``tz_offset``; aware values are
    converted to it first so the instant is kept.
    """
    if value.tzinfo is not None:
        value = value.astimezone(parse_tz_offset(tz_offset))
    return value.strftime("%Y-%m-%dT%H:%M:%S") + tz_offset


# ── CRM → Records ───────────────────────────────────────────────────────────


def product_from_crm(
    raw: dict[str, Any],
    *,
    placeholder: str,
    offer_ids: list[str] | None = None,
    partition_key: str | None = None,
    strip_markup: bool = False,
) -> ProductRecord:
    """Map a ``crm.product.*`` item to a ProductRecord.

    quantity is always 0: it is cache-local and never read from the CRM.
    """
    description = raw.get("DESCRIPTION")
    if strip_markup:
        description = strip_html(description)
    return ProductRecord(
        id=str(raw["ID"]),
        name=_as_str(raw.get("NAME")),
        description=description or placeholder,
        quantity=0,
        section_id=_as_str(raw.get("SECTION_ID")),
        offer_ids=list(offer_ids or []),
        partition_value_id=(
            property_value(raw.get(partition_key)) if partition_key else None
        ),
    )


def offers_by_parent(offers: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Group ``catalog.product.offer.list`` rows into parent id -> offer ids."""
    grouped: dict[str, list[str]] = {}
    for offer in offers:
        parent_id = property_value(offer.get("parentId"))
        offer_id = _as_str(offer.get("id"))
        if parent_id is None or offer_id is None:
            continue
        grouped.setdefault(parent_id, []).append(offer_id)
    return grouped


def select_phone(entries: list[dict[str, Any]] | None) -> str | None:
    """First multi-field entry typed as a voice number, else None."""
    for entry in entries or []:
        if entry.get("TYPE_ID") == "PHONE" and entry.get("VALUE"):
            return str(entry["VALUE"])
    return None


def contact_from_crm(raw: dict[str, Any]) -> ContactRecord:
    return ContactRecord(
        id=str(raw["ID"]),
        name=_as_str(raw.get("NAME")),
        last_name=_as_str(raw.get("LAST_NAME")),
        phone=select_phone(raw.get("PHONE")),
    )


def deal_from_crm(raw: dict[str, Any], user_fields: dict[str, str]) -> DealRecord:
    """Map a ``crm.deal.get`` record; user_fields maps logical name -> UF code."""

    def user_field(name: str) -> Any:
        code = user_fields.get(name)
        return raw.get(code) if code else None

    return DealRecord(
        id=str(raw["ID"]),
        title=_as_str(raw.get("TITLE")),
        contact_id=_as_str(raw.get("CONTACT_ID")),
        begin_date=_as_str(raw.get("BEGINDATE")),
        close_date=_as_str(raw.get("CLOSEDATE")),
        wedding_date=_as_str(user_field(WEDDING_DATE)),
        stage_id=_as_str(raw.get("STAGE_ID")),
        prepayment=_as_float(user_field(PREPAYMENT)),
        postpayment=_as_float(user_field(POSTPAYMENT)),
        opportunity=_as_float(raw.get("OPPORTUNITY")),
    )


def line_items_from_crm(rows: list[dict[str, Any]] | None) -> list[LineItem]:
    items: list[LineItem] = []
    for row in rows or []:
        product_id = _as_str(row.get("PRODUCT_ID"))
        if product_id is None:
            continue
        items.append(
            LineItem(
                product_id=product_id,
                quantity=_as_float(row.get("QUANTITY")) or 1,
                store_id=row.get("STORE_ID") or None,
            )
        )
    return items


# ── Records → CRM ───────────────────────────────────────────────────────────


def contact_to_crm(contact: ContactCreate) -> dict[str, Any]:
    fields: dict[str, Any] = {"NAME": contact.name}
    if contact.last_name:
        fields["LAST_NAME"] = contact.last_name
    if contact.phone:
        fields["PHONE"] = [{"VALUE": contact.phone, "VALUE_TYPE": "WORK"}]
    return fields


def deal_to_crm(
    deal: DealCreate, user_fields: dict[str, str], tz_offset: str
) -> dict[str, Any]:
    """Build ``crm.deal.add`` fields; user fields missing from the portal are skipped."""
    fields: dict[str, Any] = {
        "TITLE": deal.title,
        "CONTACT_ID": deal.contact_id,
        "BEGINDATE": format_crm_datetime(deal.date_from, tz_offset),
        "CLOSEDATE": format_crm_datetime(deal.date_to, tz_offset),
        "CATEGORY_ID": deal.category_id,
    }
    for name, value in (
        (WEDDING_DATE, deal.wedding_date),
        (PREPAYMENT, deal.prepayment),
        (POSTPAYMENT, deal.postpayment),
    ):
        code = user_fields.get(name)
        if code and value is not None:
            fields[code] = value
    return fields


def line_items_to_crm(items: list[LineItem]) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for item in items:
        row: dict[str, Any] = {"PRODUCT_ID": item.product_id, "QUANTITY": item.quantity}
        if item.store_id is not None:
            row["STORE_ID"] = item.store_id
        rows.append(row)
    return rows


# ── Metadata Discovery ──────────────────────────────────────────────────────


def _labels(meta: dict[str, Any]) -> set[str]:
    return {
        str(meta[label])
        for label in ("listLabel", "formLabel", "filterLabel")
        if meta.get(label)
    }


def find_deal_user_fields(
    fields_meta: dict[str, dict[str, Any]], labels: dict[str, str]
) -> dict[str, str]:
    """Map logical names to UF codes by matching any of the field's labels.

    Args:
        fields_meta: ``crm.deal.fields`` result.
        labels: logical name -> human label, e.g. ``{"wedding_date": "Дата свадьбы"}``.

    Returns:
        logical name -> field code, for the labels that were found.
    """
    found: dict[str, str] = {}
    for code, meta in fields_meta.items():
        if not isinstance(meta, dict):
            continue
        field_labels = _labels(meta)
        for name, label in labels.items():
            if name not in found and label in field_labels:
                found[name] = str(meta.get("title") or code)
    return found


def find_partition_attribute(
    fields_meta: dict[str, dict[str, Any]], title: str
) -> PartitionAttribute | None:
    """Find the product field whose title matches ``title`` case-insensitively."""
    wanted = title.casefold()
    for key, meta in fields_meta.items():
        if not isinstance(meta, dict):
            continue
        if str(meta.get("title", "")).casefold() != wanted:
            continue
        raw_values = meta.get("values") or {}
        if isinstance(raw_values, dict):
            raw_values = list(raw_values.values())
        return PartitionAttribute(
            key=key,
            values=[
                PartitionValue(id=str(v["ID"]), value=str(v["VALUE"]))
                for v in raw_values
                if "ID" in v and "VALUE" in v
            ],
        )
    return None
