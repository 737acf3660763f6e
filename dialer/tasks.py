import logging

from django.utils import timezone

from CELERY_INIT import app
from agents.state import can_request_contact, get_agent_call_state, get_available_agent_ids
from .distribution import request_next_contact
from .models import Campaign

logger = logging.getLogger(__name__)


# ============================================================================
# AUTO-DIAL ORCHESTRATION - PERIODIC ENTRY POINT
# ============================================================================

@app.task(bind=True)
def run_auto_dial_cycle(self):
    """
    Dispatch one independent next-contact request per idle agent whose
    active dialing campaign is progressive or predictive.

    Runs without a cycle-wide lock; overlapping cycles are harmless because
    each request holds only its agent's distribution lock.
    """
    cycle_start = timezone.now()
    auto_dial_campaign_ids = set(
        Campaign.objects
        .filter(is_active=True)
        .exclude(dialing_mode=Campaign.MANUAL)
        .values_list('pk', flat=True)
    )

    dispatched = 0
    for agent_id in get_available_agent_ids():
        state = get_agent_call_state(agent_id)
        if not can_request_contact(state):
            continue
        if state['active_dialing_campaign_id'] not in auto_dial_campaign_ids:
            continue

        request_next_contact_task.delay(agent_id)
        dispatched += 1

    if dispatched:
        logger.info(f"Auto-dial cycle dispatched {dispatched} requests")

    return {
        'status': 'completed',
        'timestamp': cycle_start.isoformat(),
        'dispatched': dispatched,
    }


@app.task(bind=True)
def request_next_contact_task(self, agent_id):
    contact, campaign = request_next_contact(agent_id)
    if contact is None:
        return {'status': 'empty', 'agent_id': agent_id}

    return {
        'status': 'claimed',
        'agent_id': agent_id,
        'contact_id': contact.pk,
        'campaign_id': campaign.pk,
    }
