from app.models.ledger import ChargeResult

__all__ = ["ChargeResult"]
