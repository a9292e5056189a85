from __future__ import annotations

from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gadget_lending.models.lending_models import Gadget, GadgetType, RentalItem
from gadget_lending.services.lifecycle import GADGET_IN_USE


class InventoryError(ValueError):
    pass


class GadgetInUseError(InventoryError):
    pass


class GadgetReferencedError(InventoryError):
    pass


def _parse_seq(serial_number: str) -> Optional[int]:
    parts = serial_number.split("-")
    if len(parts) != 2:
        return None
    try:
        return int(parts[1])
    except ValueError:
        return None


def generate_next_serial_number(db: Session) -> str:
    year = date.today().year
    prefix = f"GDG{year}-"

    existing = db.execute(
        select(Gadget.serial_number).where(Gadget.serial_number.startswith(prefix))
    ).scalars().all()

    max_seq = 0
    for serial in existing:
        if not serial:
            continue
        seq = _parse_seq(serial)
        if seq and seq > max_seq:
            max_seq = seq

    return f"{prefix}{max_seq + 1:04d}"


def find_type_by_name(db: Session, type_name: str) -> GadgetType | None:
    return db.execute(
        select(GadgetType).where(func.lower(GadgetType.type_name) == type_name.strip().lower())
    ).scalars().first()


def serial_in_use(db: Session, serial_number: str, exclude_gadget_id: int | None = None) -> bool:
    stmt = select(Gadget.gadget_id).where(Gadget.serial_number == serial_number)
    if exclude_gadget_id:
        stmt = stmt.where(Gadget.gadget_id != exclude_gadget_id)
    return db.execute(stmt).first() is not None


def ensure_gadget_deletable(db: Session, gadget: Gadget) -> None:
    if gadget.status == GADGET_IN_USE:
        raise GadgetInUseError("You cannot delete a gadget currently in use.")
    linked = db.execute(
        select(RentalItem.rental_item_id).where(RentalItem.gadget_id == gadget.gadget_id).limit(1)
    ).first()
    if linked is not None:
        raise GadgetReferencedError(
            "This gadget is linked to a rental record and cannot be deleted. Mark it as Lost or In Repair instead."
        )


def serialize_gadget_type(gadget_type: GadgetType) -> dict:
    return {
        "typeID": gadget_type.type_id,
        "typeName": gadget_type.type_name,
        "description": gadget_type.description,
    }


def serialize_gadget(gadget: Gadget) -> dict:
    return {
        "gadgetID": gadget.gadget_id,
        "serialNumber": gadget.serial_number,
        "gadgetName": gadget.gadget_name,
        "typeID": gadget.type_id,
        "typeName": gadget.gadget_type.type_name if gadget.gadget_type else "Unknown",
        "pricePerDay": float(gadget.price_per_day) if gadget.price_per_day is not None else None,
        "status": gadget.status,
        "imageUrl": gadget.image_url,
        "createdAt": gadget.created_at,
        "updatedAt": gadget.updated_at,
    }
