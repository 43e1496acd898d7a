"""Location tip-bank settings with per-field default merging.

Stored settings are a JSON blob on the location (``{"tipBank": {...}}``)
written by the admin UI in camelCase. Anything missing or malformed falls
back to the default for that field; the engine never fails on settings.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from tipbank.models import Location
from tipbank.schemas import ChargebackPolicy

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TipGuideSettings(_CamelModel):
    basis: str = "pre_discount"
    percentages: list[float] = Field(default_factory=lambda: [15, 18, 20, 22])
    round_to: str = Field(default="quarter", alias="roundTo")
    show_basis_explanation: bool = Field(default=True, alias="showBasisExplanation")


class TipBankSettings(_CamelModel):
    enabled: bool = True
    allocation_mode: str = Field(default="CHECK_BASED", alias="allocationMode")
    chargeback_policy: ChargebackPolicy = Field(
        default=ChargebackPolicy.BUSINESS_ABSORBS, alias="chargebackPolicy"
    )
    allow_negative_balances: bool = Field(default=False, alias="allowNegativeBalances")
    pool_cash_tips: bool = Field(default=True, alias="poolCashTips")
    table_tip_ownership_mode: str = Field(default="ITEM_BASED", alias="tableTipOwnershipMode")
    deduct_cc_fee_from_tips: bool = Field(default=False, alias="deductCCFeeFromTips")
    cc_fee_percent: float = Field(default=3.0, ge=0, le=100, alias="ccFeePercent")
    tip_guide: TipGuideSettings = Field(default_factory=TipGuideSettings, alias="tipGuide")


DEFAULT_TIP_BANK_SETTINGS = TipBankSettings()


def _merge_fields(model_cls: type[_CamelModel], raw: Any, path: str) -> dict:
    """Keep each field of ``raw`` that validates on its own; drop the rest."""
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("tip bank settings %s is not an object; using defaults", path or "blob")
        return {}
    merged: dict[str, Any] = {}
    for name, info in model_cls.model_fields.items():
        key = info.alias or name
        if key in raw:
            value = raw[key]
        elif name in raw:
            value = raw[name]
        else:
            continue
        if name == "tip_guide":
            merged[name] = TipGuideSettings(**_merge_fields(TipGuideSettings, value, f"{path}.tipGuide"))
            continue
        try:
            model_cls.model_validate({name: value})
        except ValidationError:
            logger.warning("ignoring malformed tip bank setting %s.%s=%r", path, key, value)
            continue
        merged[name] = value
    return merged


def merge_tip_bank_settings(raw: Optional[Any]) -> TipBankSettings:
    """Merge a partial ``tipBank`` object over the defaults field by field."""
    if raw is None:
        return DEFAULT_TIP_BANK_SETTINGS.model_copy(deep=True)
    return TipBankSettings(**_merge_fields(TipBankSettings, raw, "tipBank"))


def load_tip_bank_settings(db: Session, location_id: int) -> TipBankSettings:
    location = db.get(Location, location_id)
    if location is None or not isinstance(location.settings, dict):
        return merge_tip_bank_settings(None)
    return merge_tip_bank_settings(location.settings.get("tipBank"))
