from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RentalStatusChanged:
    rental_id: int
    from_status: str
    to_status: str

    event_type = "RentalStatusChanged"

    def to_payload(self) -> dict:
        return {
            "type": self.event_type,
            "rentalID": self.rental_id,
            "from": self.from_status,
            "to": self.to_status,
        }


@dataclass(frozen=True)
class ChecklistCompleted:
    rental_id: int

    event_type = "ChecklistCompleted"

    def to_payload(self) -> dict:
        return {"type": self.event_type, "rentalID": self.rental_id}


@dataclass(frozen=True)
class RentalFinalized:
    rental_id: int
    total_value: float

    event_type = "RentalFinalized"

    def to_payload(self) -> dict:
        return {
            "type": self.event_type,
            "rentalID": self.rental_id,
            "totalValue": self.total_value,
        }


def serialize_events(events: list) -> list[dict]:
    return [event.to_payload() for event in events]
