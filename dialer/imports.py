"""
Bulk contact import with deduplication.

Records use the API field names (firstName, lastName, phoneNumber,
postalCode, customFields). Per-record problems are collected into
`invalids`; anything unexpected aborts the whole import.
"""

import logging
from typing import Iterable, List, Mapping, Optional

from django.db import transaction

from orchestrator.constants import DEDUP_KEY_SEPARATOR
from .models import Campaign, Contact
from .rules import get_contact_value

logger = logging.getLogger(__name__)

MISSING_PHONE = "Phone number is missing."
PHONE_TOO_LONG = "Phone number is too long."
MALFORMED_CUSTOM_FIELDS = "Custom fields must be an object."
DUPLICATE = "Duplicate detected."
MALFORMED_RECORD = "Record must be an object."

PHONE_MAX_LENGTH = Contact._meta.get_field('phone_number').max_length


def build_dedup_key(contact, field_ids: List[str]) -> Optional[str]:
    """Composite key of the configured fields, None when every part is empty."""
    parts = []
    for field_id in field_ids:
        value = get_contact_value(contact, field_id)
        parts.append('' if value is None else str(value).strip().lower())

    if not any(parts):
        return None
    return DEDUP_KEY_SEPARATOR.join(parts)


def _validate(record: Mapping) -> Optional[str]:
    phone_number = str(record.get('phoneNumber') or '').strip()
    if not phone_number:
        return MISSING_PHONE
    if len(phone_number) > PHONE_MAX_LENGTH:
        return PHONE_TOO_LONG

    custom_fields = record.get('customFields')
    if custom_fields is not None and not isinstance(custom_fields, Mapping):
        return MALFORMED_CUSTOM_FIELDS
    return None


def _to_contact(campaign: Campaign, record: Mapping) -> Contact:
    return Contact(
        campaign=campaign,
        first_name=str(record.get('firstName') or '').strip(),
        last_name=str(record.get('lastName') or '').strip(),
        phone_number=str(record.get('phoneNumber')).strip(),
        postal_code=str(record.get('postalCode') or '').strip(),
        custom_fields=dict(record.get('customFields') or {}),
        status=Contact.PENDING,
    )


def import_contacts(campaign_id, raw_contacts: Iterable[Mapping], dedup_config: Optional[Mapping] = None):
    """
    Validate, deduplicate and insert a batch of contacts as pending.

    dedup_config: {"enabled": bool, "fieldIds": [str]}. Keys are checked
    against the campaign's existing contacts and against records accepted
    earlier in the same batch.

    Returns {"valids": [Contact], "invalids": [{"row", "reason"}]}.
    """
    dedup_config = dedup_config or {}
    field_ids = list(dedup_config.get('fieldIds') or [])
    dedup_enabled = bool(dedup_config.get('enabled')) and bool(field_ids)

    valids = []
    invalids = []

    with transaction.atomic():
        campaign = Campaign.objects.get(pk=campaign_id)

        seen_keys = set()
        if dedup_enabled:
            for contact in campaign.contacts.all().iterator():
                key = build_dedup_key(contact, field_ids)
                if key:
                    seen_keys.add(key)

        for index, record in enumerate(raw_contacts, start=1):
            if not isinstance(record, Mapping):
                invalids.append({"row": index, "reason": MALFORMED_RECORD})
                continue

            row = record.get('originalRow', index)

            reason = _validate(record)
            if reason:
                invalids.append({"row": row, "reason": reason})
                continue

            if dedup_enabled:
                key = build_dedup_key(record, field_ids)
                if key and key in seen_keys:
                    invalids.append({"row": row, "reason": DUPLICATE})
                    continue
                if key:
                    seen_keys.add(key)

            valids.append(_to_contact(campaign, record))

        if valids:
            valids = Contact.objects.bulk_create(valids, batch_size=500)

    logger.info(
        f"Imported {len(valids)} contacts into campaign {campaign_id} "
        f"({len(invalids)} rejected, dedup={'on' if dedup_enabled else 'off'})"
    )
    return {"valids": valids, "invalids": invalids}
