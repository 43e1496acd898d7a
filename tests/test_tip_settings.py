from conftest import T0
from tipbank.models import Location
from tipbank.schemas import ChargebackPolicy
from tipbank.tip_settings import DEFAULT_TIP_BANK_SETTINGS, load_tip_bank_settings, merge_tip_bank_settings


def test_missing_settings_fall_back_to_defaults() -> None:
    merged = merge_tip_bank_settings(None)
    assert merged == DEFAULT_TIP_BANK_SETTINGS
    assert merged.chargeback_policy == ChargebackPolicy.BUSINESS_ABSORBS
    assert merged.allow_negative_balances is False
    assert merged.cc_fee_percent == 3.0
    assert merged.tip_guide.percentages == [15, 18, 20, 22]


def test_fields_merge_individually() -> None:
    merged = merge_tip_bank_settings(
        {
            "chargebackPolicy": "EMPLOYEE_CHARGEBACK",
            "allowNegativeBalances": True,
            "tipGuide": {"roundTo": "dime"},
        }
    )
    assert merged.chargeback_policy == ChargebackPolicy.EMPLOYEE_CHARGEBACK
    assert merged.allow_negative_balances is True
    assert merged.tip_guide.round_to == "dime"
    assert merged.tip_guide.basis == "pre_discount"
    assert merged.enabled is True


def test_malformed_fields_are_dropped() -> None:
    merged = merge_tip_bank_settings(
        {
            "chargebackPolicy": "SOMETIMES",
            "allowNegativeBalances": True,
            "ccFeePercent": 150,
            "tipGuide": {"percentages": "lots", "showBasisExplanation": False},
        }
    )
    assert merged.chargeback_policy == ChargebackPolicy.BUSINESS_ABSORBS
    assert merged.allow_negative_balances is True
    assert merged.cc_fee_percent == 3.0
    assert merged.tip_guide.percentages == [15, 18, 20, 22]
    assert merged.tip_guide.show_basis_explanation is False


def test_non_object_blob_uses_defaults() -> None:
    assert merge_tip_bank_settings("oops") == DEFAULT_TIP_BANK_SETTINGS
    assert merge_tip_bank_settings({"tipGuide": 7}).tip_guide == DEFAULT_TIP_BANK_SETTINGS.tip_guide


def test_load_reads_location_blob(db) -> None:
    location = Location(
        name="Pier 9",
        settings={"tipBank": {"chargebackPolicy": "EMPLOYEE_CHARGEBACK"}, "theme": "dark"},
        created_at=T0,
    )
    db.add(location)
    db.commit()

    assert load_tip_bank_settings(db, location.id).chargeback_policy == ChargebackPolicy.EMPLOYEE_CHARGEBACK
    assert load_tip_bank_settings(db, 404) == DEFAULT_TIP_BANK_SETTINGS
