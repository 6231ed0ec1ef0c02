"""Contadores del cliente de telemetría (expuestos en connection_status)."""

from __future__ import annotations


class ReceiverStats:
    """Estadísticas del cliente de telemetría."""

    def __init__(self):
        self.received = 0
        self.accepted = 0
        self.stale = 0
        self.rejected = 0
        self.persisted = 0
        self.persist_errors = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} accepted={self.accepted} "
            f"stale={self.stale} rejected={self.rejected} persisted={self.persisted}"
        )

    def to_dict(self) -> dict:
        """Convert stats to dictionary."""
        return {
            "received": self.received,
            "accepted": self.accepted,
            "stale": self.stale,
            "rejected": self.rejected,
            "persisted": self.persisted,
            "persist_errors": self.persist_errors,
            "last_message_at": self.last_message_at,
        }
