"""Unit tests for sop_engine.services.rule_validator."""
import pytest

from sop_engine.domain import CandidateRule, RuleStatus, ValidationStatus
from sop_engine.errors import CandidatePromotionError
from sop_engine.services.rule_validator import REQUIRED_FIELDS, RuleValidator


@pytest.fixture
def validator(registry) -> RuleValidator:
    return RuleValidator(registry)


def _errors(result, field=None):
    return [e for e in result.errors if field is None or e.field == field]


def test_valid_rule_has_no_errors(validator, mod25_rule):
    result = validator.validate(mod25_rule)
    assert result.is_valid
    assert result.errors == []
    assert result.needs_definition == []
    # trigger and reference are recommended only
    assert {w.field for w in result.warnings} == {"documentation_trigger", "reference"}
    assert result.validation_status == ValidationStatus.WARNING


def test_complete_rule_is_fully_valid(validator, mod25_rule):
    rule = dict(mod25_rule, documentation_trigger="minor procedure;same day", reference="Section 2.1")
    result = validator.validate(rule)
    assert result.validation_status == ValidationStatus.VALID


def test_validation_is_idempotent(validator, mod25_rule):
    candidate = CandidateRule.from_dict(dict(mod25_rule, code="@ADD(@25)"))
    assert validator.validate(candidate) == validator.validate(candidate)


def test_action_in_code_field(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, code="@ADD(@25)"))
    assert not result.is_valid
    [error] = _errors(result, "code")
    assert error.message == "Code field must contain ONLY codes or a code group tag, not actions"


@pytest.mark.parametrize("rule_id,ok", [("AU-MOD25-0001", True), ("aumod25-1", False), ("AU-MOD25-1", False)])
def test_rule_id_format(validator, mod25_rule, rule_id, ok):
    result = validator.validate(dict(mod25_rule, rule_id=rule_id))
    assert bool(_errors(result, "rule_id")) is not ok


def test_required_fields(validator):
    result = validator.validate(CandidateRule())
    assert {e.field for e in result.errors} == set(REQUIRED_FIELDS)


def test_description_must_be_one_sentence_ending_with_period(validator, mod25_rule):
    two = validator.validate(dict(mod25_rule, description="For @BCBS payers. Then @ADD(@25)."))
    assert any("single sentence" in e.message for e in _errors(two, "description"))
    no_period = validator.validate(dict(mod25_rule, description="For @BCBS payers, @ADD(@25)"))
    assert any("end with a period" in e.message for e in _errors(no_period, "description"))


def test_description_without_tags_is_a_warning(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, description="Add modifier 25 for Blue Cross."))
    assert result.is_valid
    assert any(w.field == "description" for w in result.warnings)


def test_unknown_description_tag_needs_definition(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, description="For @NEW_PAYER payers, @ADD(@25)."))
    assert result.is_valid
    assert result.needs_definition == ["@NEW_PAYER"]


def test_unknown_code_group_is_an_error(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, code="@KNEE_PROCS"))
    assert _errors(result, "code")
    assert result.needs_definition == ["@KNEE_PROCS"]


def test_code_group_tag_must_be_a_code_group(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, code="@BCBS"))
    assert _errors(result, "code")


def test_literal_codes(validator, mod25_rule):
    assert validator.validate(dict(mod25_rule, code="99213, J0585")).is_valid
    result = validator.validate(dict(mod25_rule, code="99213,9921"))
    [error] = _errors(result, "code")
    assert error.value == "9921"


def test_pipe_listed_groups(validator, mod25_rule):
    assert validator.validate(dict(mod25_rule, payer_group="@BCBS|@AETNA")).is_valid
    result = validator.validate(dict(mod25_rule, payer_group="@BCBS|@UNKNOWN_PAYER"))
    assert _errors(result, "payer_group")
    assert "@UNKNOWN_PAYER" in result.needs_definition
    result = validator.validate(dict(mod25_rule, provider_group="@NURSES"))
    assert _errors(result, "provider_group")


def test_unknown_action_tag(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, action="@EXPLODE(@25)"))
    assert _errors(result, "action")
    assert "@EXPLODE" in result.needs_definition


def test_action_needs_a_verb(validator, mod25_rule):
    result = validator.validate(dict(mod25_rule, action="modifier 25"))
    assert [e.message for e in _errors(result, "action")] == [
        "Action must contain valid action tag (@ADD, @REMOVE, @SWAP, etc.)"
    ]


def test_swap_requires_codes_selected(validator, mod25_rule):
    swap = dict(mod25_rule, action="@SWAP(@J0585→@J0587)", description="For @BCBS payers, swap the drug code.")
    assert _errors(validator.validate(swap), "codes_selected")
    assert validator.validate(dict(swap, codes_selected=["J0585"])).is_valid


def test_chart_section(validator, mod25_rule):
    assert validator.validate(dict(mod25_rule, chart_section="PROCEDURE_SECTION")).is_valid
    result = validator.validate(dict(mod25_rule, chart_section="BILLING_NOTES"))
    assert _errors(result, "chart_section")
    assert result.needs_definition == ["BILLING_NOTES"]


@pytest.mark.parametrize(
    "effective,end,field",
    [
        ("2024/01/01", "", "effective_date"),
        ("2024-02-30", "", "effective_date"),
        ("2024-01-01", "2023-12-31", "end_date"),
        ("2024-01-01", "2024-01-01", "end_date"),
        ("2024-01-01", "Dec 2024", "end_date"),
    ],
)
def test_date_errors(validator, mod25_rule, effective, end, field):
    result = validator.validate(dict(mod25_rule, effective_date=effective, end_date=end))
    assert _errors(result, field)


def test_end_date_after_start_is_fine(validator, mod25_rule):
    assert validator.validate(dict(mod25_rule, end_date="2024-12-31")).is_valid


def test_deprecated_tag_is_a_warning(registry, mod25_rule):
    registry.deprecate("@BCBS")
    result = RuleValidator(registry).validate(mod25_rule)
    assert result.is_valid
    [warning] = [w for w in result.warnings if w.message == "Tag @BCBS is deprecated"]
    assert warning.field == "payer_group"


def test_needs_definition_tag_is_a_warning(registry, mod25_rule):
    registry.create_tag("@NEW_PAYER", "payer_group")
    result = RuleValidator(registry).validate(dict(mod25_rule, payer_group="@NEW_PAYER"))
    assert result.is_valid
    [warning] = [w for w in result.warnings if "not yet approved" in w.message]
    assert warning.field == "payer_group"
    assert warning.value == "@NEW_PAYER"


def test_lifecycle_warning_names_the_field_holding_the_tag(registry, mod25_rule):
    registry.create_tag("NEW_CHART_SECTION", "chart_section")
    registry.create_tag("@PENDING_GROUP", "code_group", expands_to=["99213"])
    registry.deprecate("@ADD")
    rule = dict(mod25_rule, code="@PENDING_GROUP", chart_section="NEW_CHART_SECTION")
    result = RuleValidator(registry).validate(rule)
    fields = {w.value: w.field for w in result.warnings if w.value in ("@PENDING_GROUP", "@ADD", "NEW_CHART_SECTION")}
    assert fields == {"@PENDING_GROUP": "code", "@ADD": "action", "NEW_CHART_SECTION": "chart_section"}


def test_validate_batch_partitions(validator, mod25_rule):
    rules = [
        mod25_rule,
        dict(mod25_rule, rule_id="bad"),
        dict(mod25_rule, rule_id="AU-MOD25-0002", payer_group="@NEW_PLAN_A"),
        dict(mod25_rule, rule_id="AU-MOD25-0003", description="For @NEW_PLAN_A payers, @ADD(@25)."),
    ]
    batch = validator.validate_batch(rules)
    assert [r.rule_id for r in batch.valid_rules] == ["AU-MOD25-0001", "AU-MOD25-0003"]
    assert [r.rule.rule_id for r in batch.invalid_rules] == ["bad", "AU-MOD25-0002"]
    assert batch.all_needs_definition == ["@NEW_PLAN_A"]
    assert len(batch.results) == 4


def test_promote_valid_rule(validator, mod25_rule):
    rule = validator.promote(mod25_rule)
    assert rule.rule_id == "AU-MOD25-0001"
    assert rule.status == RuleStatus.PENDING
    assert rule.validation_status == ValidationStatus.WARNING


def test_promote_with_unknown_tags_needs_definition(validator, mod25_rule):
    rule = validator.promote(dict(mod25_rule, description="For @NEW_PAYER payers, @ADD(@25)."))
    assert rule.status == RuleStatus.NEEDS_DEFINITION


def test_promote_invalid_rule_raises(validator, mod25_rule):
    with pytest.raises(CandidatePromotionError) as exc_info:
        validator.promote(dict(mod25_rule, code="@ADD(@25)"))
    assert not exc_info.value.validation.is_valid
    assert "code" in str(exc_info.value)
