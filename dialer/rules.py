"""
Rule evaluation for campaign filters and quotas.

Pure functions only: no database access, no side effects. Contacts may be
Contact model instances or plain import records (dicts using the camelCase
field names of the API).
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

EQUALS = 'equals'
STARTS_WITH = 'starts_with'
CONTAINS = 'contains'
IS_NOT_EMPTY = 'is_not_empty'

INCLUDE = 'include'
EXCLUDE = 'exclude'

# API field name -> Contact attribute
STANDARD_FIELDS = {
    'firstName': 'first_name',
    'lastName': 'last_name',
    'phoneNumber': 'phone_number',
    'postalCode': 'postal_code',
}


@dataclass(frozen=True)
class FilterRule:
    id: str
    rule_type: str
    contact_field: str
    operator: str
    value: Any = ''

    @classmethod
    def from_dict(cls, data: Mapping) -> 'FilterRule':
        return cls(
            id=str(data.get('id', '')),
            rule_type=data.get('type') or data.get('ruleType') or INCLUDE,
            contact_field=data.get('contactField', ''),
            operator=data.get('operator', EQUALS),
            value=data.get('value', ''),
        )


@dataclass(frozen=True)
class QuotaRule:
    id: str
    contact_field: str
    operator: str
    value: Any
    limit: int

    @classmethod
    def from_dict(cls, data: Mapping) -> 'QuotaRule':
        return cls(
            id=str(data.get('id', '')),
            contact_field=data.get('contactField', ''),
            operator=data.get('operator', EQUALS),
            value=data.get('value', ''),
            limit=int(data.get('limit', 0)),
        )


def parse_filter_rules(raw_rules: Optional[Iterable[Mapping]]) -> List[FilterRule]:
    return [FilterRule.from_dict(rule) for rule in raw_rules or []]


def parse_quota_rules(raw_rules: Optional[Iterable[Mapping]]) -> List[QuotaRule]:
    return [QuotaRule.from_dict(rule) for rule in raw_rules or []]


def get_contact_value(contact, field_id: str) -> Any:
    """
    Value of a standard field, falling back to the custom fields.

    Returns None when the field is absent.
    """
    if isinstance(contact, Mapping):
        if field_id in STANDARD_FIELDS:
            return contact.get(field_id)
        custom_fields = contact.get('customFields') or {}
    else:
        if field_id in STANDARD_FIELDS:
            return getattr(contact, STANDARD_FIELDS[field_id], None)
        custom_fields = getattr(contact, 'custom_fields', None) or {}
    return custom_fields.get(field_id)


def _normalize(value: Any) -> str:
    return str(value).strip().lower()


def matches_filter(contact, rule) -> bool:
    """True when the contact's value for rule.contact_field satisfies rule.operator."""
    contact_value = get_contact_value(contact, rule.contact_field)
    if contact_value is None:
        return False

    contact_string = _normalize(contact_value)
    rule_string = _normalize(rule.value if rule.value is not None else '')

    if rule.operator == EQUALS:
        return contact_string == rule_string
    if rule.operator == STARTS_WITH:
        return contact_string.startswith(rule_string)
    if rule.operator == CONTAINS:
        return rule_string in contact_string
    if rule.operator == IS_NOT_EMPTY:
        return contact_string != ''
    return False


def is_admitted(contact, filter_rules: Iterable[FilterRule]) -> bool:
    """
    Include rules are OR-ed (any match admits); an exclude match always rejects.
    """
    filter_rules = list(filter_rules or [])
    if not filter_rules:
        return True

    includes = [rule for rule in filter_rules if rule.rule_type == INCLUDE]
    excludes = [rule for rule in filter_rules if rule.rule_type == EXCLUDE]

    if includes and not any(matches_filter(contact, rule) for rule in includes):
        return False

    return not any(matches_filter(contact, rule) for rule in excludes)


def quota_reached(contact, rule: QuotaRule, current_count: int) -> bool:
    return matches_filter(contact, rule) and current_count >= rule.limit


def any_quota_reached(contact, quota_rules: Iterable[QuotaRule], quota_counts: Dict[str, int]) -> bool:
    return any(
        quota_reached(contact, rule, quota_counts.get(rule.id, 0))
        for rule in quota_rules
    )


def compute_quota_counts(quota_rules: Iterable[QuotaRule], positive_contacts: Iterable) -> Dict[str, int]:
    """
    Count, per quota rule, the distinct positively qualified contacts of a
    campaign that fall into the rule's segment.

    `positive_contacts` must already be distinct.
    """
    quota_rules = list(quota_rules)
    counts = {rule.id: 0 for rule in quota_rules}
    for contact in positive_contacts:
        for rule in quota_rules:
            if matches_filter(contact, rule):
                counts[rule.id] += 1
    return counts


def build_candidate_predicate(filter_rules: List[FilterRule], quota_rules: List[QuotaRule], quota_counts: Dict[str, int]):
    def predicate(contact) -> bool:
        if not is_admitted(contact, filter_rules):
            return False
        return not any_quota_reached(contact, quota_rules, quota_counts)

    return predicate
