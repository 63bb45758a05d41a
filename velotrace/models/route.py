"""
Route catalog model.

Static reference data for the cycling routes a questionnaire can be
answered against. Rows are seeded once from the route catalog and are
not edited afterwards; quota state lives in QuotaLedgerEntry.
"""

from datetime import datetime, timezone
from enum import Enum

from velotrace.models import db


class RouteCategory(str, Enum):
    MAIN_LOOP = "main-loop"
    LOOP_BRANCH = "loop-branch"
    LOOP_ALTERNATIVE = "loop-alternative"
    DIVERSE = "diverse"
    OTHER = "other"


# Declaration order is also the reporting order.
CATEGORY_ORDER = [c.value for c in RouteCategory]

CATEGORY_DISPLAY_NAMES = {
    RouteCategory.MAIN_LOOP.value: "Round-Island Main Loop",
    RouteCategory.LOOP_BRANCH.value: "Round-Island Branch Routes",
    RouteCategory.LOOP_ALTERNATIVE.value: "Round-Island Alternative Routes",
    RouteCategory.DIVERSE.value: "Diverse Cycling Routes",
    RouteCategory.OTHER.value: "Other Routes",
}


class Route(db.Model):
    """A fixed cycling route with a capped number of rewarded completions."""
    __tablename__ = "routes"

    id = db.Column(db.Integer, primary_key=True)
    route_id = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "route-1-3"
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(30), nullable=False, default=RouteCategory.OTHER.value)
    # NULL → category default from CATEGORY_COMPLETION_LIMITS
    completion_limit = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_routes_category", "category"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "route_id": self.route_id,
            "name": self.name,
            "category": self.category,
            "completion_limit": self.completion_limit,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Route {self.route_id} [{self.category}]>"
