"""
Contact Store - every mutation of contact status goes through here.

The store is the only enforcer of "at most one agent per contact". Claims
use SELECT ... FOR UPDATE SKIP LOCKED so concurrent agents never wait on
each other's rows, and every status change is a conditional UPDATE on the
expected current status, which also covers backends without row locking.
"""

import logging
from typing import Callable, Optional

from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from .models import CallHistory, Campaign, Contact, ContactNote, PersonalCallback, Qualification
from .rules import compute_quota_counts

logger = logging.getLogger(__name__)


class QualificationNotApplicable(Exception):
    pass


def _lock_pending_contact(contact_id) -> bool:
    # Rows locked by another transaction are skipped, never waited on
    locked = (
        Contact.objects
        .select_for_update(skip_locked=True)
        .filter(pk=contact_id, status=Contact.PENDING)
        .values_list('pk', flat=True)
    )
    return bool(list(locked[:1]))


def claim_next_contact(campaign_id, candidate_predicate: Callable[[Contact], bool]) -> Optional[Contact]:
    """
    Claim the first pending contact of the campaign accepted by the predicate.

    The scan order of pending contacts is deliberately unspecified; only the
    at-most-once claim is guaranteed. Returns None when nothing could be
    claimed, which is a normal outcome.
    """
    with transaction.atomic():
        candidates = list(
            Contact.objects
            .filter(campaign_id=campaign_id, status=Contact.PENDING)
            .order_by()
        )

        for contact in candidates:
            if not candidate_predicate(contact):
                continue

            if not _lock_pending_contact(contact.pk):
                logger.debug(f"Contact {contact.pk} locked or already claimed, trying next candidate")
                continue

            now = timezone.now()
            claimed = Contact.objects.filter(
                pk=contact.pk,
                status=Contact.PENDING
            ).update(status=Contact.CALLED, updated_at=now)

            if not claimed:
                logger.debug(f"Contact {contact.pk} claimed concurrently, trying next candidate")
                continue

            contact.status = Contact.CALLED
            contact.updated_at = now
            logger.info(f"Contact {contact.pk} claimed from campaign {campaign_id}")
            return contact

    return None


def release_contact(contact_id) -> bool:
    """Requeue a held contact (called -> pending)."""
    released = Contact.objects.filter(
        pk=contact_id,
        status=Contact.CALLED
    ).update(status=Contact.PENDING, updated_at=timezone.now())

    if released:
        logger.info(f"Contact {contact_id} released back to pending")
    return bool(released)


def qualification_applies(qualification: Qualification, campaign: Campaign) -> bool:
    return qualification.is_standard or qualification.group_id == campaign.qualification_group_id


def positive_qualification_ids(campaign: Campaign):
    return list(
        Qualification.objects
        .filter(type=Qualification.POSITIVE)
        .filter(Q(group__isnull=True) | Q(group_id=campaign.qualification_group_id))
        .values_list('pk', flat=True)
    )


def positive_contacts(campaign: Campaign):
    """Distinct contacts of the campaign with at least one positive disposition."""
    qualification_ids = positive_qualification_ids(campaign)
    if not qualification_ids:
        return Contact.objects.none()

    return (
        Contact.objects
        .filter(campaign=campaign, call_history__qualification_id__in=qualification_ids)
        .distinct()
    )


def _record_disposition(contact_id, qualification: Qualification, agent_id=None) -> Optional[CallHistory]:
    contact = Contact.objects.select_related('campaign').filter(pk=contact_id).first()
    if contact is None:
        logger.warning(f"Qualification of unknown contact {contact_id} ignored")
        return None

    if not qualification_applies(qualification, contact.campaign):
        raise QualificationNotApplicable(
            f"Qualification {qualification.pk} does not apply to campaign {contact.campaign_id}"
        )

    updated = Contact.objects.filter(
        pk=contact_id,
        status=Contact.CALLED
    ).update(
        status=Contact.QUALIFIED,
        last_qualification=qualification,
        updated_at=timezone.now()
    )

    if not updated:
        # Double submit or a contact that was never claimed
        logger.warning(f"Contact {contact_id} is not in called status, qualification ignored")
        return None

    contact.status = Contact.QUALIFIED
    contact.last_qualification = qualification
    return CallHistory.objects.create(
        contact=contact,
        campaign_id=contact.campaign_id,
        agent_id=agent_id,
        qualification=qualification,
    )


def qualify_contact(contact_id, qualification_id, agent_id=None) -> Optional[CallHistory]:
    """
    Record the outcome of a call (called -> qualified).

    A contact that is not in called status is left untouched and None is
    returned.
    """
    qualification = Qualification.objects.get(pk=qualification_id)

    with transaction.atomic():
        history = _record_disposition(contact_id, qualification, agent_id)

    if history:
        logger.info(f"Contact {contact_id} qualified with {qualification_id}")
    return history


def schedule_callback_and_qualify(contact_id, qualification_id, agent_id, scheduled_time, notes=''):
    """
    Persist a personal callback and qualify the contact in one transaction.

    Either both rows are written or neither is; returns (history, callback)
    or (None, None) when the contact is not in called status.
    """
    qualification = Qualification.objects.get(pk=qualification_id)

    with transaction.atomic():
        history = _record_disposition(contact_id, qualification, agent_id)
        if history is None:
            return None, None

        contact = history.contact
        callback = PersonalCallback.objects.create(
            agent_id=agent_id,
            contact=contact,
            campaign_id=contact.campaign_id,
            contact_name=f"{contact.first_name} {contact.last_name}".strip(),
            contact_number=contact.phone_number,
            scheduled_time=scheduled_time,
            notes=notes or '',
        )

    logger.info(f"Callback {callback.pk} scheduled for contact {contact_id} at {scheduled_time}")
    return history, callback


def recycle_contacts(campaign_id, qualification_id) -> int:
    """
    Return every qualified contact whose latest disposition is
    `qualification_id` to the pending pool. Returns the number of rows reset.
    """
    with transaction.atomic():
        count = Contact.objects.filter(
            campaign_id=campaign_id,
            status=Contact.QUALIFIED,
            last_qualification_id=qualification_id
        ).update(status=Contact.PENDING, updated_at=timezone.now())

    logger.info(f"Recycled {count} contacts of campaign {campaign_id} qualified with {qualification_id}")
    return count


def add_contact_note(contact_id, note, agent_id=None) -> ContactNote:
    note = (note or '').strip()
    if not note:
        raise ValueError("Note text is required")

    contact = Contact.objects.get(pk=contact_id)
    return ContactNote.objects.create(
        contact=contact,
        campaign_id=contact.campaign_id,
        agent_id=agent_id,
        note=note,
    )


def update_callback_status(callback_id, status) -> Optional[PersonalCallback]:
    if status not in (PersonalCallback.COMPLETED, PersonalCallback.CANCELLED):
        raise ValueError(f"Invalid callback status: {status}")

    updated = PersonalCallback.objects.filter(pk=callback_id).update(
        status=status,
        updated_at=timezone.now()
    )
    if not updated:
        logger.warning(f"Attempted to update non-existent callback {callback_id}")
        return None
    return PersonalCallback.objects.get(pk=callback_id)


def campaign_quota_counts(campaign: Campaign, quota_rules):
    """Current count per quota rule, computed once per distribution attempt."""
    if not quota_rules:
        return {}
    return compute_quota_counts(quota_rules, positive_contacts(campaign).iterator())
