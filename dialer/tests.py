"""
Unit tests for dialer/rules.py, dialer/imports.py and dialer/store.py

Tests cover:
- Filter and quota rule evaluation (no database)
- Contact import validation and deduplication
- Contact claiming, including skipped rows and concurrent claims
- Qualification, callbacks, recycling and release
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.db import DatabaseError, connection
from django.utils import timezone

from dialer.imports import (
    DUPLICATE,
    MALFORMED_CUSTOM_FIELDS,
    MALFORMED_RECORD,
    MISSING_PHONE,
    build_dedup_key,
    import_contacts,
)
from dialer.models import Agent, CallHistory, Campaign, Contact, ContactNote, PersonalCallback, Qualification, QualificationGroup
from dialer.rules import (
    FilterRule,
    QuotaRule,
    build_candidate_predicate,
    compute_quota_counts,
    get_contact_value,
    is_admitted,
    matches_filter,
    parse_filter_rules,
    quota_reached,
)
from dialer import store


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def campaign(db):
    return Campaign.objects.create(name="Energy", priority=5)


@pytest.fixture
def sale(db):
    return Qualification.objects.create(id="std-1", code="1", description="Sale", type=Qualification.POSITIVE)


@pytest.fixture
def no_answer(db):
    return Qualification.objects.create(id="std-2", code="2", description="No answer", type=Qualification.NEUTRAL)


@pytest.fixture
def agent(db):
    return Agent.objects.create(extension="101")


def make_contact(campaign, phone_number, status=Contact.PENDING, **kwargs):
    return Contact.objects.create(campaign=campaign, phone_number=phone_number, status=status, **kwargs)


def include(field, operator, value=''):
    return FilterRule(id=f"in-{field}", rule_type='include', contact_field=field, operator=operator, value=value)


def exclude(field, operator, value=''):
    return FilterRule(id=f"ex-{field}", rule_type='exclude', contact_field=field, operator=operator, value=value)


# ============================================================================
# TEST: rule evaluation
# ============================================================================

class TestMatchesFilter:

    def test_absent_field_never_matches(self):
        contact = {"phoneNumber": "0601", "customFields": {}}

        assert matches_filter(contact, include("email", "is_not_empty")) is False
        assert matches_filter(contact, include("email", "equals", "")) is False

    def test_values_are_trimmed_and_lowercased(self):
        contact = {"phoneNumber": "0601", "postalCode": " 75000 ", "lastName": "DUPONT"}

        assert matches_filter(contact, include("postalCode", "equals", "75000 "))
        assert matches_filter(contact, include("lastName", "equals", "dupont"))

    def test_operators(self):
        contact = {"phoneNumber": "0601020304", "customFields": {"city": "Saint-Denis"}}

        assert matches_filter(contact, include("phoneNumber", "starts_with", "06"))
        assert not matches_filter(contact, include("phoneNumber", "starts_with", "07"))
        assert matches_filter(contact, include("city", "contains", "denis"))
        assert matches_filter(contact, include("city", "is_not_empty"))

    def test_is_not_empty_rejects_blank_value(self):
        contact = {"phoneNumber": "0601", "customFields": {"email": "   "}}

        assert not matches_filter(contact, include("email", "is_not_empty"))

    def test_unknown_operator_never_matches(self):
        contact = {"phoneNumber": "0601"}

        assert not matches_filter(contact, include("phoneNumber", "regex", ".*"))

    def test_model_instance_custom_fields(self):
        contact = Contact(phone_number="0601", postal_code="13001", custom_fields={"segment": "Gold"})

        assert get_contact_value(contact, "postalCode") == "13001"
        assert get_contact_value(contact, "segment") == "Gold"
        assert get_contact_value(contact, "missing") is None


class TestIsAdmitted:

    def test_no_rules_admits(self):
        assert is_admitted({"phoneNumber": "0601"}, [])

    def test_includes_are_ored(self):
        rules = [include("postalCode", "equals", "75000"), include("postalCode", "starts_with", "69")]

        assert is_admitted({"postalCode": "69003"}, rules)
        assert is_admitted({"postalCode": "75000"}, rules)
        assert not is_admitted({"postalCode": "13001"}, rules)

    def test_exclude_dominates_include(self):
        rules = [include("postalCode", "starts_with", "75"), exclude("postalCode", "equals", "75016")]

        assert is_admitted({"postalCode": "75001"}, rules)
        assert not is_admitted({"postalCode": "75016"}, rules)

    def test_only_excludes(self):
        rules = [exclude("postalCode", "starts_with", "97")]

        assert is_admitted({"postalCode": "75001"}, rules)
        assert not is_admitted({"postalCode": "97400"}, rules)

    def test_parse_filter_rules_from_campaign_json(self):
        rules = parse_filter_rules([
            {"id": "r1", "type": "exclude", "contactField": "postalCode", "operator": "equals", "value": "75016"},
        ])

        assert rules[0].rule_type == "exclude"
        assert not is_admitted({"postalCode": "75016"}, rules)


class TestQuotaRules:

    def test_quota_reached_only_for_matching_segment(self):
        rule = QuotaRule(id="q1", contact_field="postalCode", operator="equals", value="75000", limit=2)

        assert quota_reached({"postalCode": "75000"}, rule, 2)
        assert not quota_reached({"postalCode": "75000"}, rule, 1)
        assert not quota_reached({"postalCode": "69000"}, rule, 5)

    def test_compute_quota_counts(self):
        rules = [
            QuotaRule(id="paris", contact_field="postalCode", operator="starts_with", value="75", limit=10),
            QuotaRule(id="lyon", contact_field="postalCode", operator="equals", value="69000", limit=10),
        ]
        positives = [{"postalCode": "75001"}, {"postalCode": "75016"}, {"postalCode": "13001"}]

        assert compute_quota_counts(rules, positives) == {"paris": 2, "lyon": 0}

    def test_candidate_predicate_combines_filters_and_quotas(self):
        quota = QuotaRule(id="q1", contact_field="postalCode", operator="equals", value="75000", limit=1)
        predicate = build_candidate_predicate([exclude("postalCode", "starts_with", "97")], [quota], {"q1": 1})

        assert not predicate({"postalCode": "75000"})
        assert not predicate({"postalCode": "97400"})
        assert predicate({"postalCode": "69000"})


# ============================================================================
# TEST: import / dedup
# ============================================================================

def _batch(size):
    return [
        {"originalRow": index + 2, "firstName": f"Contact {index}", "phoneNumber": f"06000000{index:02d}"}
        for index in range(size)
    ]


@pytest.mark.django_db
class TestImportContacts:

    def test_missing_phone_rejected(self, campaign):
        result = import_contacts(campaign.id, [
            {"originalRow": 2, "phoneNumber": "0601"},
            {"originalRow": 3, "phoneNumber": "  "},
            {"originalRow": 4, "firstName": "No phone"},
        ])

        assert len(result["valids"]) == 1
        assert result["invalids"] == [
            {"row": 3, "reason": MISSING_PHONE},
            {"row": 4, "reason": MISSING_PHONE},
        ]
        assert Contact.objects.filter(campaign=campaign, status=Contact.PENDING).count() == 1

    def test_malformed_custom_fields_rejected(self, campaign):
        result = import_contacts(campaign.id, [{"phoneNumber": "0601", "customFields": "oops"}])

        assert result["valids"] == []
        assert result["invalids"] == [{"row": 1, "reason": MALFORMED_CUSTOM_FIELDS}]

    def test_non_object_record_does_not_abort_batch(self, campaign):
        result = import_contacts(campaign.id, [
            {"phoneNumber": "0601"},
            "0602;Martin",
            None,
            {"phoneNumber": "0603"},
        ])

        assert len(result["valids"]) == 2
        assert result["invalids"] == [
            {"row": 2, "reason": MALFORMED_RECORD},
            {"row": 3, "reason": MALFORMED_RECORD},
        ]
        assert set(campaign.contacts.values_list("phone_number", flat=True)) == {"0601", "0603"}

    def test_dedup_is_idempotent(self, campaign):
        dedup = {"enabled": True, "fieldIds": ["phoneNumber"]}

        first = import_contacts(campaign.id, _batch(50), dedup)
        second = import_contacts(campaign.id, _batch(50), dedup)

        assert len(first["valids"]) == 50
        assert first["invalids"] == []
        assert second["valids"] == []
        assert len(second["invalids"]) == 50
        assert all(invalid["reason"] == DUPLICATE for invalid in second["invalids"])
        assert campaign.contacts.count() == 50

    def test_duplicates_within_batch(self, campaign):
        result = import_contacts(campaign.id, [
            {"phoneNumber": "0601"},
            {"phoneNumber": " 0601 "},
        ], {"enabled": True, "fieldIds": ["phoneNumber"]})

        assert len(result["valids"]) == 1
        assert result["invalids"] == [{"row": 2, "reason": DUPLICATE}]

    def test_empty_composite_key_never_matches(self, campaign):
        result = import_contacts(campaign.id, [
            {"phoneNumber": "0601"},
            {"phoneNumber": "0602"},
        ], {"enabled": True, "fieldIds": ["email"]})

        assert len(result["valids"]) == 2
        assert result["invalids"] == []

    def test_composite_key_uses_every_field(self, campaign):
        dedup = {"enabled": True, "fieldIds": ["lastName", "postalCode"]}
        result = import_contacts(campaign.id, [
            {"phoneNumber": "0601", "lastName": "Martin", "postalCode": "75001"},
            {"phoneNumber": "0602", "lastName": "MARTIN", "postalCode": "69001"},
            {"phoneNumber": "0603", "lastName": "martin ", "postalCode": "75001"},
        ], dedup)

        assert len(result["valids"]) == 2
        assert result["invalids"] == [{"row": 3, "reason": DUPLICATE}]

    def test_dedup_disabled_accepts_duplicates(self, campaign):
        import_contacts(campaign.id, _batch(3), {"enabled": False, "fieldIds": ["phoneNumber"]})
        import_contacts(campaign.id, _batch(3), {"enabled": False, "fieldIds": ["phoneNumber"]})

        assert campaign.contacts.count() == 6

    def test_dedup_is_scoped_to_campaign(self, campaign):
        other = Campaign.objects.create(name="Other")
        dedup = {"enabled": True, "fieldIds": ["phoneNumber"]}
        import_contacts(other.id, _batch(5), dedup)

        result = import_contacts(campaign.id, _batch(5), dedup)

        assert len(result["valids"]) == 5

    def test_custom_fields_are_stored(self, campaign):
        import_contacts(campaign.id, [{"phoneNumber": "0601", "customFields": {"segment": "gold"}}])

        assert campaign.contacts.get().custom_fields == {"segment": "gold"}

    def test_unexpected_error_commits_nothing(self, campaign):
        def records():
            yield {"phoneNumber": "0601"}
            raise DatabaseError("connection lost")

        with pytest.raises(DatabaseError):
            import_contacts(campaign.id, records())

        assert campaign.contacts.count() == 0

    def test_build_dedup_key(self):
        assert build_dedup_key({"phoneNumber": " 0601 "}, ["phoneNumber"]) == "0601"
        assert build_dedup_key({"lastName": "A", "customFields": {"x": 1}}, ["lastName", "x"]) == "a||1"
        assert build_dedup_key({"phoneNumber": "0601"}, ["email", "city"]) is None


# ============================================================================
# TEST: claim
# ============================================================================

def admit_all(contact):
    return True


@pytest.mark.django_db
class TestClaimNextContact:

    def test_claim_marks_contact_called(self, campaign):
        contact = make_contact(campaign, "0601")

        claimed = store.claim_next_contact(campaign.id, admit_all)

        assert claimed.pk == contact.pk
        assert claimed.status == Contact.CALLED
        contact.refresh_from_db()
        assert contact.status == Contact.CALLED

    def test_empty_campaign_returns_none(self, campaign):
        make_contact(campaign, "0601", status=Contact.QUALIFIED)

        assert store.claim_next_contact(campaign.id, admit_all) is None

    def test_predicate_is_respected(self, campaign):
        make_contact(campaign, "0601", postal_code="97400")
        wanted = make_contact(campaign, "0602", postal_code="75001")

        claimed = store.claim_next_contact(campaign.id, lambda contact: contact.postal_code.startswith("75"))

        assert claimed.pk == wanted.pk
        assert store.claim_next_contact(campaign.id, lambda contact: contact.postal_code.startswith("75")) is None

    def test_only_own_campaign(self, campaign):
        other = Campaign.objects.create(name="Other")
        make_contact(other, "0601")

        assert store.claim_next_contact(campaign.id, admit_all) is None

    def test_each_contact_claimed_once(self, campaign):
        for index in range(5):
            make_contact(campaign, f"060{index}")

        claims = [store.claim_next_contact(campaign.id, admit_all) for _ in range(7)]
        claimed_ids = [contact.pk for contact in claims if contact is not None]

        assert len(claimed_ids) == 5
        assert len(set(claimed_ids)) == 5

    def test_contact_claimed_concurrently_is_skipped(self, campaign):
        """Another transaction claims the first candidate between the scan and the lock."""
        first = make_contact(campaign, "0601")
        second = make_contact(campaign, "0602")
        raced = []

        def predicate(contact):
            if not raced:
                raced.append(contact.pk)
                Contact.objects.filter(pk=contact.pk).update(status=Contact.CALLED)
            return True

        claimed = store.claim_next_contact(campaign.id, predicate)

        assert claimed is not None
        assert claimed.pk != raced[0]
        assert {claimed.pk, raced[0]} == {first.pk, second.pk}

    def test_locked_contact_is_skipped(self, campaign):
        make_contact(campaign, "0601")
        other = make_contact(campaign, "0602")
        original = store._lock_pending_contact

        def lock(contact_id):
            if contact_id != other.pk:
                return False
            return original(contact_id)

        with patch('dialer.store._lock_pending_contact', side_effect=lock):
            claimed = store.claim_next_contact(campaign.id, admit_all)

        assert claimed.pk == other.pk


@pytest.mark.skipif(connection.vendor != 'postgresql', reason="SKIP LOCKED needs PostgreSQL")
@pytest.mark.django_db(transaction=True)
def test_concurrent_claims_are_exclusive():
    campaign = Campaign.objects.create(name="Race")
    for index in range(5):
        make_contact(campaign, f"060{index}")

    claimed = []
    claimed_lock = threading.Lock()

    def worker():
        try:
            contact = store.claim_next_contact(campaign.id, admit_all)
            if contact is not None:
                with claimed_lock:
                    claimed.append(contact.pk)
        finally:
            connection.close()

    threads = [threading.Thread(target=worker) for _ in range(12)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed) == 5
    assert len(set(claimed)) == 5


# ============================================================================
# TEST: qualification / callbacks / recycling
# ============================================================================

@pytest.mark.django_db
class TestQualifyContact:

    def test_called_contact_is_qualified(self, campaign, sale, agent):
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        history = store.qualify_contact(contact.id, sale.id, agent.id)

        contact.refresh_from_db()
        assert contact.status == Contact.QUALIFIED
        assert contact.last_qualification_id == sale.id
        assert history.agent_id == agent.id
        assert CallHistory.objects.filter(contact=contact, qualification=sale).count() == 1

    def test_pending_contact_is_left_untouched(self, campaign, sale):
        contact = make_contact(campaign, "0601")

        assert store.qualify_contact(contact.id, sale.id) is None

        contact.refresh_from_db()
        assert contact.status == Contact.PENDING
        assert not CallHistory.objects.exists()

    def test_double_submit_records_once(self, campaign, sale):
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        assert store.qualify_contact(contact.id, sale.id) is not None
        assert store.qualify_contact(contact.id, sale.id) is None
        assert CallHistory.objects.count() == 1

    def test_qualification_from_other_group_rejected(self, campaign):
        group = QualificationGroup.objects.create(name="Insurance")
        scoped = Qualification.objects.create(id="ins-1", type=Qualification.POSITIVE, group=group)
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        with pytest.raises(store.QualificationNotApplicable):
            store.qualify_contact(contact.id, scoped.id)

        contact.refresh_from_db()
        assert contact.status == Contact.CALLED

    def test_unknown_qualification(self, campaign):
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        with pytest.raises(Qualification.DoesNotExist):
            store.qualify_contact(contact.id, "nope")


@pytest.mark.django_db
class TestScheduleCallbackAndQualify:

    def test_callback_and_qualification_written_together(self, campaign, agent):
        callback_qualification = Qualification.objects.create(id="std-94", type=Qualification.NEUTRAL)
        contact = make_contact(campaign, "0601", status=Contact.CALLED, first_name="Ana", last_name="Lopez")
        when = timezone.now() + timedelta(days=1)

        history, callback = store.schedule_callback_and_qualify(contact.id, callback_qualification.id, agent.id, when, "after lunch")

        contact.refresh_from_db()
        assert contact.status == Contact.QUALIFIED
        assert history.qualification_id == "std-94"
        assert callback.contact_name == "Ana Lopez"
        assert callback.contact_number == "0601"
        assert callback.status == PersonalCallback.PENDING

    def test_failure_rolls_back_qualification(self, campaign, agent):
        callback_qualification = Qualification.objects.create(id="std-94", type=Qualification.NEUTRAL)
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        with patch('dialer.store.PersonalCallback.objects.create', side_effect=DatabaseError("boom")):
            with pytest.raises(DatabaseError):
                store.schedule_callback_and_qualify(contact.id, callback_qualification.id, agent.id, timezone.now())

        contact.refresh_from_db()
        assert contact.status == Contact.CALLED
        assert not CallHistory.objects.exists()
        assert not PersonalCallback.objects.exists()

    def test_not_called_writes_nothing(self, campaign, agent):
        callback_qualification = Qualification.objects.create(id="std-94", type=Qualification.NEUTRAL)
        contact = make_contact(campaign, "0601")

        result = store.schedule_callback_and_qualify(contact.id, callback_qualification.id, agent.id, timezone.now())

        assert result == (None, None)
        assert not PersonalCallback.objects.exists()


@pytest.mark.django_db
class TestRecycleContacts:

    def test_recycle_round_trip(self, campaign, sale, no_answer):
        recycled = make_contact(campaign, "0601", status=Contact.CALLED)
        kept = make_contact(campaign, "0602", status=Contact.CALLED)
        store.qualify_contact(recycled.id, no_answer.id)
        store.qualify_contact(kept.id, sale.id)

        assert store.recycle_contacts(campaign.id, no_answer.id) == 1

        recycled.refresh_from_db()
        kept.refresh_from_db()
        assert recycled.status == Contact.PENDING
        assert kept.status == Contact.QUALIFIED
        assert store.claim_next_contact(campaign.id, admit_all).pk == recycled.pk

    def test_recycle_is_idempotent(self, campaign, no_answer):
        contact = make_contact(campaign, "0601", status=Contact.CALLED)
        store.qualify_contact(contact.id, no_answer.id)

        assert store.recycle_contacts(campaign.id, no_answer.id) == 1
        assert store.recycle_contacts(campaign.id, no_answer.id) == 0

    def test_recycle_scoped_to_campaign(self, campaign, no_answer):
        other = Campaign.objects.create(name="Other")
        contact = make_contact(other, "0601", status=Contact.CALLED)
        store.qualify_contact(contact.id, no_answer.id)

        assert store.recycle_contacts(campaign.id, no_answer.id) == 0


@pytest.mark.django_db
class TestContactStoreMisc:

    def test_release_contact(self, campaign):
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        assert store.release_contact(contact.id) is True
        assert store.release_contact(contact.id) is False
        contact.refresh_from_db()
        assert contact.status == Contact.PENDING

    def test_positive_contacts_are_distinct_and_group_scoped(self, campaign, sale):
        group = QualificationGroup.objects.create(name="Insurance")
        foreign = Qualification.objects.create(id="ins-1", type=Qualification.POSITIVE, group=group)
        contact = make_contact(campaign, "0601", status=Contact.QUALIFIED)
        CallHistory.objects.create(contact=contact, campaign=campaign, qualification=sale)
        CallHistory.objects.create(contact=contact, campaign=campaign, qualification=sale)
        other = make_contact(campaign, "0602", status=Contact.QUALIFIED)
        CallHistory.objects.create(contact=other, campaign=campaign, qualification=foreign)

        assert list(store.positive_contacts(campaign)) == [contact]

    def test_update_callback_status(self, campaign, agent):
        contact = make_contact(campaign, "0601")
        callback = PersonalCallback.objects.create(
            agent=agent, contact=contact, campaign=campaign, contact_number="0601", scheduled_time=timezone.now()
        )

        updated = store.update_callback_status(callback.id, PersonalCallback.COMPLETED)

        assert updated.status == PersonalCallback.COMPLETED
        assert store.update_callback_status(callback.id + 1, PersonalCallback.CANCELLED) is None
        with pytest.raises(ValueError):
            store.update_callback_status(callback.id, "pending")

    def test_add_contact_note(self, campaign, agent):
        contact = make_contact(campaign, "0601")

        note = store.add_contact_note(contact.id, "  call back after 18h ", agent.id)

        assert note.note == "call back after 18h"
        assert note.campaign_id == campaign.id
        assert ContactNote.objects.count() == 1
        with pytest.raises(ValueError):
            store.add_contact_note(contact.id, "   ")
