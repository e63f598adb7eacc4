from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class AIUsageRecord(db.Model):
    """
    One extraction call (local OCR, PDF text, or cloud vision).

    Append-only and independent of the import lifecycle; read only by
    usage_service.get_usage_stats for reporting. Local engines record zero
    tokens and zero cost but still capture duration and outcome.
    """
    __tablename__ = "ai_usage_records"
    __table_args__ = (
        db.Index("ix_ai_usage_tenant_created", "tenant_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(64), nullable=False, index=True)

    service = db.Column(db.String(32), nullable=False)   # openai, anthropic, tesseract, pypdf
    model = db.Column(db.String(64), nullable=False)
    operation = db.Column(db.String(64), nullable=False, default="extract_inventory")

    tokens_input = db.Column(db.Integer, nullable=False, default=0)
    tokens_output = db.Column(db.Integer, nullable=False, default=0)
    tokens_total = db.Column(db.Integer, nullable=False, default=0)
    cost_estimate = db.Column(db.Float, nullable=False, default=0.0)  # USD
    duration_ms = db.Column(db.Integer, nullable=False, default=0)

    session_id = db.Column(db.String(64), nullable=True, index=True)
    success = db.Column(db.Boolean, nullable=False, default=True)
    error_message = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "service": self.service,
            "model": self.model,
            "operation": self.operation,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "tokens_total": self.tokens_total,
            "cost_estimate": self.cost_estimate,
            "duration_ms": self.duration_ms,
            "session_id": self.session_id,
            "success": self.success,
            "error_message": self.error_message,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
        }
