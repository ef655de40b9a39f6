from pydantic import BaseModel, ConfigDict, Field


class ChargeResult(BaseModel):
    """Outcome of one charge; serialized with camelCase keys on the wire."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    is_authorized: bool = Field(alias="isAuthorized")
    remaining_balance: int = Field(alias="remainingBalance")
    charges: int  # amount actually deducted, 0 when rejected
