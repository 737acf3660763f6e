"""
Distribution Engine - picks the next contact for an agent.

No engine-wide lock: concurrent requests from different agents only meet
at the Contact Store's row claims. A per-agent Redis lock keeps a single
agent from running two requests at once (double click, auto-pull racing a
manual request).
"""

import logging

from django.db import transaction

from agents.state import assign_contact, can_request_contact, dial_current_contact, get_agent_call_state, InvalidTransition
from orchestrator.constants import DISTRIBUTION_LOCK_TIMEOUT
from orchestrator.notifications import CONTACT_CLAIMED, broadcast
from orchestrator.redis import AGENT_DISTRIBUTION_LOCK_REDIS_KEY, conn
from .models import Campaign
from .rules import build_candidate_predicate, parse_filter_rules, parse_quota_rules
from .store import campaign_quota_counts, claim_next_contact, release_contact

logger = logging.getLogger(__name__)


def get_agent_campaigns(agent_id):
    """Active campaigns assigned to the agent, highest priority first, then by name."""
    return list(
        Campaign.objects
        .filter(agents__id=agent_id, is_active=True)
        .order_by('-priority', 'name', 'pk')
        .distinct()
    )


def claim_for_campaign(campaign):
    filter_rules = parse_filter_rules(campaign.filter_rules)
    quota_rules = parse_quota_rules(campaign.quota_rules)
    quota_counts = campaign_quota_counts(campaign, quota_rules)

    predicate = build_candidate_predicate(filter_rules, quota_rules, quota_counts)
    return claim_next_contact(campaign.pk, predicate)


def find_and_claim_contact(agent_id):
    for campaign in get_agent_campaigns(agent_id):
        contact = claim_for_campaign(campaign)
        if contact is not None:
            return contact, campaign
        logger.debug(f"Campaign {campaign.pk} has no claimable contact for agent {agent_id}")
    return None, None


def request_next_contact(agent_id):
    """
    Claim the next contact for an Available agent.

    Returns (contact, campaign), or (None, None) when the agent may not
    receive a contact right now or every campaign is exhausted.
    """
    agent_id = str(agent_id)
    request_lock = conn.lock(f"{AGENT_DISTRIBUTION_LOCK_REDIS_KEY}{agent_id}", timeout=DISTRIBUTION_LOCK_TIMEOUT)

    if not request_lock.acquire(blocking=False):
        logger.info(f"Next-contact request already in flight for agent {agent_id}")
        return None, None

    try:
        state = get_agent_call_state(agent_id)
        if not can_request_contact(state):
            logger.info(f"Agent {agent_id} cannot receive a contact while {state['status']}")
            return None, None

        contact, campaign = find_and_claim_contact(agent_id)
        if contact is None:
            logger.info(f"No contact available for agent {agent_id}")
            return None, None

        if assign_contact(agent_id, contact.pk, campaign.pk) is None:
            release_contact(contact.pk)
            return None, None

        transaction.on_commit(lambda: broadcast(CONTACT_CLAIMED, {
            "agentId": agent_id,
            "contactId": contact.pk,
            "campaignId": campaign.pk,
        }))

        if campaign.dialing_mode != Campaign.MANUAL:
            try:
                dial_current_contact(agent_id)
            except InvalidTransition as e:
                logger.warning(f"Auto-dial of contact {contact.pk} skipped: {e}")

        return contact, campaign

    finally:
        if request_lock.owned():
            request_lock.release()
