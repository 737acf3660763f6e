import logging

from django.db import transaction
from django.db.models import Count

from orchestrator.notifications import ADMIN_ROOM, CAMPAIGN_UPDATED, SUPERVISOR_ROOM, broadcast
from .models import Agent, Campaign, Contact
from .rules import parse_filter_rules, parse_quota_rules
from .store import campaign_quota_counts

logger = logging.getLogger(__name__)

# API field -> model field
CAMPAIGN_FIELDS = {
    'name': 'name',
    'description': 'description',
    'priority': 'priority',
    'isActive': 'is_active',
    'dialingMode': 'dialing_mode',
    'qualificationGroupId': 'qualification_group_id',
    'callerId': 'caller_id',
    'wrapUpTime': 'wrap_up_time',
}


def _normalize_filter_rules(raw_rules):
    return [
        {
            "id": rule.id,
            "type": rule.rule_type,
            "contactField": rule.contact_field,
            "operator": rule.operator,
            "value": rule.value,
        }
        for rule in parse_filter_rules(raw_rules)
    ]


def _normalize_quota_rules(raw_rules):
    return [
        {
            "id": rule.id,
            "contactField": rule.contact_field,
            "operator": rule.operator,
            "value": rule.value,
            "limit": rule.limit,
        }
        for rule in parse_quota_rules(raw_rules)
    ]


def save_campaign(data, campaign_id=None):
    """
    Create or update a campaign and reconcile its assigned agents.

    `data` uses the API field names; agents are given as `assignedAgentIds`.
    A missing key leaves the stored value unchanged on update.
    """
    if campaign_id is None and not data.get('name'):
        raise ValueError("Campaign name is required")

    dialing_mode = data.get('dialingMode')
    if dialing_mode is not None and dialing_mode not in dict(Campaign.DIALING_MODE_CHOICES):
        raise ValueError(f"Invalid dialing mode: {dialing_mode}")

    with transaction.atomic():
        if campaign_id is None:
            campaign = Campaign()
        else:
            campaign = Campaign.objects.select_for_update().get(pk=campaign_id)

        for api_field, model_field in CAMPAIGN_FIELDS.items():
            if api_field in data:
                setattr(campaign, model_field, data[api_field])

        if 'filterRules' in data:
            campaign.filter_rules = _normalize_filter_rules(data['filterRules'])
        if 'quotaRules' in data:
            campaign.quota_rules = _normalize_quota_rules(data['quotaRules'])

        campaign.full_clean(exclude=['agents'])
        campaign.save()

        if 'assignedAgentIds' in data:
            wanted = set(
                Agent.objects
                .filter(pk__in=data['assignedAgentIds'] or [])
                .values_list('pk', flat=True)
            )
            current = set(campaign.agents.values_list('pk', flat=True))

            to_add = wanted - current
            to_remove = current - wanted
            if to_add:
                campaign.agents.add(*to_add)
            if to_remove:
                campaign.agents.remove(*to_remove)
            logger.info(f"Campaign {campaign.pk} agents synced: +{len(to_add)} -{len(to_remove)}")

        transaction.on_commit(lambda: notify_campaign_updated(campaign.pk))

    logger.info(f"Campaign {campaign.pk} saved")
    return campaign


def delete_campaign(campaign_id):
    """Delete a campaign with its contacts, history, callbacks and notes. Returns False when unknown."""
    with transaction.atomic():
        deleted, _ = Campaign.objects.filter(pk=campaign_id).delete()
        if not deleted:
            return False
        transaction.on_commit(lambda: notify_campaign_updated(campaign_id))

    logger.info(f"Campaign {campaign_id} deleted")
    return True


def notify_campaign_updated(campaign_id):
    payload = {"campaignId": campaign_id}
    broadcast(CAMPAIGN_UPDATED, payload, room=SUPERVISOR_ROOM)
    broadcast(CAMPAIGN_UPDATED, payload, room=ADMIN_ROOM)


def get_campaign_stats(campaign):
    """Contact counts per status plus the progress of every quota rule."""
    counts = {status: 0 for status, _ in Contact.STATUS_CHOICES}
    for row in campaign.contacts.order_by().values('status').annotate(count=Count('pk')):
        counts[row['status']] = row['count']

    quota_rules = parse_quota_rules(campaign.quota_rules)
    quota_counts = campaign_quota_counts(campaign, quota_rules)

    quotas = []
    for rule in quota_rules:
        current = quota_counts.get(rule.id, 0)
        quotas.append({
            "id": rule.id,
            "contactField": rule.contact_field,
            "operator": rule.operator,
            "value": rule.value,
            "current": current,
            "limit": rule.limit,
            "progress": round(current * 100 / rule.limit, 1) if rule.limit > 0 else 100.0,
        })

    return {
        "campaignId": campaign.pk,
        "total": sum(counts.values()),
        "statuses": counts,
        "quotas": quotas,
    }
