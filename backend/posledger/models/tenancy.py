from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Seller(db.Model):
    """
    Multi-tenant root: every catalog entry, stock movement and invoice
    belongs to exactly one seller.

    DESIGN:
    - Sellers are the tenant boundary
    - Every uniqueness constraint below the seller includes seller_id
    - No query may read or write across seller boundaries
    """
    __tablename__ = "sellers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Seller id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
