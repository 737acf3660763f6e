import logging
import uuid
from typing import Optional, Tuple

from django.conf import settings

from orchestrator.constants import ORIGINATE_TIMEOUT
from orchestrator.freeswitch import fs_manager
from .models import Agent, Campaign

logger = logging.getLogger(__name__)


# ============================================================================
# CALL ORIGINATION - FREESWITCH INTEGRATION
# ============================================================================

def get_agent_extension(agent_id) -> Optional[str]:
    return Agent.objects.filter(pk=agent_id).values_list('extension', flat=True).first()


def originate_call(agent_id, destination: str, campaign_id) -> Tuple[bool, Optional[str]]:
    """
    Dial `destination` and bridge it to the agent's extension.

    Fire-and-forget: success only means FreeSWITCH accepted the background
    job. Returns (success, call_uuid).
    """
    try:
        call_uuid = str(uuid.uuid4())

        originate_command = build_originate_command(
            call_id=call_uuid,
            destination=destination,
            agent_id=agent_id,
            campaign_id=campaign_id,
        )

        logger.info(f"Originate command: {originate_command}")
        if not originate_command:
            return False, None

        job_response = fs_manager.bgapi(originate_command)

        if job_response and "+OK" in job_response:
            job_uuid = job_response.split(" ")[-1]
            logger.info(f"Call to {destination} for agent {agent_id} initiated. Tracking Job: {job_uuid}")
            return True, call_uuid

        logger.error(f"FreeSWITCH rejected call to {destination} for agent {agent_id}: {job_response}")
        return False, None

    except Exception as exc:
        logger.exception(f"Error originating call to {destination}: {exc}")
        return False, None


def build_originate_command(call_id: str, destination: str, agent_id, campaign_id) -> Optional[str]:
    agent_extension = get_agent_extension(agent_id)
    if not agent_extension:
        logger.error(f"Agent {agent_id} has no extension, cannot originate")
        return None

    caller_id = Campaign.objects.filter(pk=campaign_id).values_list('caller_id', flat=True).first()

    channel_vars = {
        'origination_uuid': call_id,
        'originate_timeout': ORIGINATE_TIMEOUT,
    }
    if caller_id:
        channel_vars['origination_caller_id_number'] = caller_id

    headers = {
        'call_id': call_id,
        'agent_id': agent_id,
        'campaign_id': campaign_id,
    }

    var_string = ','.join(
        [f"{k}={v}" for k, v in channel_vars.items()] +
        [f"sip_h_X-{k}='{v}'" for k, v in headers.items()]
    )

    if settings.ENV == 'PROD':
        call_string = f"sofia/external/{destination}"
    else:
        call_string = f"user/{destination}" #destination is an extension (eg 1000)

    return f"originate {{{var_string}}}{call_string} &bridge(user/{agent_extension})"
