"""
Agent call-state machine.

Each agent's state is one JSON record in the AGENT_CALL_STATES hash:

    {"agent_id", "status", "current_contact_id", "current_campaign_id",
     "active_dialing_campaign_id", "current_call_id", "wrap_up_token",
     "status_changed_at"}

All writes go through _transition(), which holds the agent's Redis lock
while the record is read, checked and written back. Idle agents (Available
and not holding a contact) are mirrored in the AVAILABLE_AGENTS sorted set.
"""

import logging
import time
import uuid

import orjson as json
from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from dialer.models import Agent, Campaign, Contact
from dialer.store import qualify_contact, release_contact, schedule_callback_and_qualify
from dialer.telephony import originate_call
from orchestrator.constants import AUTO_REQUEST_DELAY_SECONDS, WRAP_UP_GRACE_SECONDS
from orchestrator.notifications import AGENT_STATUS_CHANGED, PLANNING_UPDATED, broadcast
from orchestrator.redis import (
    AGENT_STATE_LOCK_REDIS_KEY,
    AGENT_STATE_REDIS_KEY,
    AVAILABLE_AGENTS_REDIS_KEY,
    LOCK_TIMEOUTS,
    SLEEP,
    conn,
)

logger = logging.getLogger(__name__)

AVAILABLE = 'Available'
RINGING = 'Ringing'
ON_CALL = 'OnCall'
POST_CALL = 'PostCall'
PAUSED = 'Paused'
TRAINING = 'Training'
DISCONNECTED = 'Disconnected'

ALL_STATUSES = (AVAILABLE, RINGING, ON_CALL, POST_CALL, PAUSED, TRAINING, DISCONNECTED)

ALLOWED_TRANSITIONS = {
    DISCONNECTED: {AVAILABLE},
    AVAILABLE: {PAUSED, TRAINING, RINGING, ON_CALL, POST_CALL, DISCONNECTED},
    PAUSED: {AVAILABLE, TRAINING, DISCONNECTED},
    TRAINING: {AVAILABLE, PAUSED, DISCONNECTED},
    RINGING: {ON_CALL, POST_CALL, AVAILABLE, DISCONNECTED},
    ON_CALL: {POST_CALL, AVAILABLE, DISCONNECTED},
    POST_CALL: {AVAILABLE, DISCONNECTED},
}

# Statuses an agent may pick from the softphone
AGENT_SELECTABLE = {AVAILABLE, PAUSED, TRAINING, DISCONNECTED}

IN_CALL = {RINGING, ON_CALL, POST_CALL}


class AgentStateError(Exception):
    pass


class InvalidTransition(AgentStateError):
    pass


def _default_state(agent_id):
    return {
        "agent_id": str(agent_id),
        "status": DISCONNECTED,
        "current_contact_id": None,
        "current_campaign_id": None,
        "active_dialing_campaign_id": None,
        "current_call_id": None,
        "wrap_up_token": None,
        "status_changed_at": None,
    }


def get_agent_call_state(agent_id):
    state = _default_state(agent_id)
    raw_data = conn.hget(AGENT_STATE_REDIS_KEY, str(agent_id))
    if raw_data:
        state.update(json.loads(raw_data))
    return state


def get_available_agent_ids():
    return conn.zrange(AVAILABLE_AGENTS_REDIS_KEY, 0, -1)


def find_contact_holder(contact_id):
    """Agent id currently holding `contact_id`, or None."""
    for agent_id, raw_data in conn.hgetall(AGENT_STATE_REDIS_KEY).items():
        if json.loads(raw_data).get("current_contact_id") == contact_id:
            return agent_id
    return None


def is_idle(state):
    return state["status"] == AVAILABLE and state["current_contact_id"] is None


def can_request_contact(state):
    return is_idle(state) and state["active_dialing_campaign_id"] is not None


def _check_transition(current, target):
    if target != current and target not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidTransition(f"Transition {current} -> {target} is not allowed")


def _transition(agent_id, mutate):
    """
    Apply `mutate(state) -> state | None` under the agent's lock.

    A None from the mutator leaves the record untouched. Returns the new
    state, or None when nothing was written.
    """
    agent_id = str(agent_id)
    lock_key = f"{AGENT_STATE_LOCK_REDIS_KEY}{agent_id}"
    agent_lock = conn.lock(lock_key, timeout=LOCK_TIMEOUTS, sleep=SLEEP)

    try:
        if agent_lock.acquire(blocking_timeout=LOCK_TIMEOUTS):
            state = get_agent_call_state(agent_id)
            previous_status = state["status"]

            new_state = mutate(dict(state))
            if new_state is None:
                return None

            if new_state["status"] != previous_status:
                new_state["status_changed_at"] = time.time()

            with conn.pipeline() as pipe:
                pipe.hset(AGENT_STATE_REDIS_KEY, agent_id, json.dumps(new_state))
                if is_idle(new_state):
                    pipe.zadd(AVAILABLE_AGENTS_REDIS_KEY, {agent_id: time.time()}, nx=True) #keeps the time the agent became idle
                else:
                    pipe.zrem(AVAILABLE_AGENTS_REDIS_KEY, agent_id)
                pipe.execute()
        else:
            logger.error(f"Could not acquire lock for agent {agent_id} - System Busy")
            return None

    except AgentStateError:
        raise
    except Exception as e:
        logger.error(f"Error updating agent {agent_id}: {e}")
        return None
    finally:
        if agent_lock.owned():
            agent_lock.release()

    if new_state["status"] != previous_status:
        logger.info(f"Agent {agent_id}: {previous_status} -> {new_state['status']}")
        broadcast(AGENT_STATUS_CHANGED, {
            "agentId": agent_id,
            "status": new_state["status"],
            "previousStatus": previous_status,
        })
    return new_state


def _schedule_next_contact_request(agent_id):
    from dialer.tasks import request_next_contact_task

    request_next_contact_task.apply_async(args=[str(agent_id)], countdown=AUTO_REQUEST_DELAY_SECONDS)


def _is_auto_dial_campaign(campaign_id):
    if campaign_id is None:
        return False
    return Campaign.objects.filter(pk=campaign_id).exclude(dialing_mode=Campaign.MANUAL).exists()


def _release_held(contact_ids):
    for contact_id in contact_ids:
        release_contact(contact_id)


# ============================================================================
# LOGIN / LOGOUT
# ============================================================================

def login_agent(agent_id):
    if not Agent.objects.filter(pk=agent_id, is_active=True).exists():
        raise AgentStateError(f"Agent {agent_id} is unknown or inactive")

    def mutate(state):
        if state["status"] == DISCONNECTED:
            state["status"] = AVAILABLE
        return state

    return _transition(agent_id, mutate)


def logout_agent(agent_id, forced=False):
    """Any state -> Disconnected. A held contact goes back to pending."""
    held = []

    def mutate(state):
        if state["current_contact_id"] is not None:
            held.append(state["current_contact_id"])
        state.update({
            "status": DISCONNECTED,
            "current_contact_id": None,
            "current_campaign_id": None,
            "active_dialing_campaign_id": None,
            "current_call_id": None,
            "wrap_up_token": None,
        })
        return state

    new_state = _transition(agent_id, mutate)
    if new_state is not None:
        _release_held(held)
        if forced:
            logger.warning(f"Agent {agent_id} was logged out by a supervisor")
    return new_state


def force_logout(agent_id):
    return logout_agent(agent_id, forced=True)


def force_pause(agent_id):
    """Supervisor pause. Bypasses the mid-call guard; a held contact is requeued."""
    held = []

    def mutate(state):
        if state["status"] == DISCONNECTED:
            raise InvalidTransition(f"Agent {agent_id} is not logged in")
        if state["current_contact_id"] is not None:
            held.append(state["current_contact_id"])
        state.update({
            "status": PAUSED,
            "current_contact_id": None,
            "current_campaign_id": None,
            "current_call_id": None,
            "wrap_up_token": None,
        })
        return state

    new_state = _transition(agent_id, mutate)
    if new_state is not None:
        _release_held(held)
        logger.warning(f"Agent {agent_id} was paused by a supervisor")
    return new_state


# ============================================================================
# AGENT-INITIATED STATUS CHANGES
# ============================================================================

def set_agent_status(agent_id, status):
    if status not in AGENT_SELECTABLE:
        raise InvalidTransition(f"{status} cannot be selected by an agent")

    if status == DISCONNECTED:
        return logout_agent(agent_id)

    if status == AVAILABLE and get_agent_call_state(agent_id)["status"] == POST_CALL:
        return complete_wrap_up(agent_id)

    def mutate(state):
        current = state["status"]
        if current in IN_CALL:
            raise InvalidTransition(f"Cannot switch to {status} while {current}")
        if current == status:
            return state
        _check_transition(current, status)
        if state["current_contact_id"] is not None:
            raise InvalidTransition(f"Cannot switch to {status} while holding contact {state['current_contact_id']}")
        state["status"] = status
        return state

    return _transition(agent_id, mutate)


def set_active_dialing_campaign(agent_id, campaign_id):
    if campaign_id is not None:
        campaign_id = int(campaign_id)
        assigned = Campaign.objects.filter(pk=campaign_id, agents__id=agent_id, is_active=True).exists()
        if not assigned:
            raise AgentStateError(f"Campaign {campaign_id} is not an active campaign of agent {agent_id}")

    def mutate(state):
        if state["status"] == DISCONNECTED:
            raise InvalidTransition(f"Agent {agent_id} is not logged in")
        state["active_dialing_campaign_id"] = campaign_id
        return state

    return _transition(agent_id, mutate)


# ============================================================================
# DISTRIBUTION AND DIALING
# ============================================================================

def assign_contact(agent_id, contact_id, campaign_id):
    """Hand a freshly claimed contact to an idle agent, None if the agent is no longer idle."""
    def mutate(state):
        if not is_idle(state):
            logger.warning(f"Agent {agent_id} is {state['status']}, contact {contact_id} not assigned")
            return None
        state["current_contact_id"] = contact_id
        state["current_campaign_id"] = campaign_id
        return state

    return _transition(agent_id, mutate)


def dial_current_contact(agent_id, destination=None):
    """
    Originate a call to the held contact, Available -> OnCall.

    A failed originate leaves the agent Available holding the contact and
    returns None.
    """
    state = get_agent_call_state(agent_id)
    contact_id = state["current_contact_id"]
    if state["status"] != AVAILABLE or contact_id is None:
        raise InvalidTransition(f"Agent {agent_id} has no contact to dial")

    if not destination:
        destination = Contact.objects.values_list('phone_number', flat=True).get(pk=contact_id)

    success, call_uuid = originate_call(agent_id, destination, state["current_campaign_id"])
    if not success:
        logger.error(f"Dial of contact {contact_id} for agent {agent_id} failed")
        return None

    def mutate(state):
        if state["status"] != AVAILABLE or state["current_contact_id"] != contact_id:
            logger.warning(f"Agent {agent_id} changed state while dialing contact {contact_id}")
            return None
        state["status"] = ON_CALL
        state["current_call_id"] = call_uuid
        return state

    return _transition(agent_id, mutate)


# ============================================================================
# DISPOSITION AND WRAP-UP
# ============================================================================

def _parse_callback_time(value):
    scheduled_time = parse_datetime(value) if isinstance(value, str) else value
    if scheduled_time is None:
        raise AgentStateError(f"Invalid callback time: {value}")
    if timezone.is_naive(scheduled_time):
        scheduled_time = timezone.make_aware(scheduled_time)
    return scheduled_time


def record_disposition(agent_id, qualification_id, callback=None):
    """
    Qualify the held contact and move the agent to PostCall, or straight to
    Available when the campaign has no wrap-up time.

    The personal-callback qualification requires `callback`
    ({"scheduledTime", "notes"}); the callback and the qualification are
    written in one transaction before the agent leaves the call.
    """
    state = get_agent_call_state(agent_id)
    contact_id = state["current_contact_id"]
    if contact_id is None:
        logger.warning(f"Agent {agent_id} holds no contact, disposition {qualification_id} ignored")
        return state

    campaign = Campaign.objects.get(pk=state["current_campaign_id"])

    if qualification_id == settings.PERSONAL_CALLBACK_QUALIFICATION_ID:
        if not callback or not callback.get("scheduledTime"):
            raise AgentStateError("A callback time is required for this qualification")
        history, personal_callback = schedule_callback_and_qualify(
            contact_id,
            qualification_id,
            agent_id,
            _parse_callback_time(callback["scheduledTime"]),
            callback.get("notes", ""),
        )
        if personal_callback is not None:
            broadcast(PLANNING_UPDATED, {"agentId": str(agent_id), "callbackId": personal_callback.pk})
    else:
        history = qualify_contact(contact_id, qualification_id, agent_id)

    if history is None:
        logger.warning(f"Contact {contact_id} was already qualified, releasing agent {agent_id}")

    wrap_up_time = campaign.wrap_up_time
    target = POST_CALL if wrap_up_time > 0 else AVAILABLE
    token = uuid.uuid4().hex if wrap_up_time > 0 else None

    def mutate(state):
        if state["current_contact_id"] != contact_id:
            return None
        _check_transition(state["status"], target)
        state.update({
            "status": target,
            "current_contact_id": None,
            "current_campaign_id": campaign.pk if wrap_up_time > 0 else None,
            "current_call_id": None,
            "wrap_up_token": token,
        })
        return state

    new_state = _transition(agent_id, mutate)
    if new_state is None:
        return get_agent_call_state(agent_id)

    if wrap_up_time > 0:
        from agents.tasks import end_wrap_up

        end_wrap_up.apply_async(args=[str(agent_id), token], countdown=wrap_up_time + WRAP_UP_GRACE_SECONDS)
    elif campaign.dialing_mode != Campaign.MANUAL:
        _schedule_next_contact_request(agent_id)

    return new_state


def complete_wrap_up(agent_id, token=None):
    """
    PostCall -> Available. With a token (timer expiry) only the wrap-up that
    scheduled it is ended; a stale timer is a no-op.
    """
    finished = []

    def mutate(state):
        if state["status"] != POST_CALL:
            return None
        if token is not None and state.get("wrap_up_token") != token:
            return None
        finished.append(state["current_campaign_id"])
        state.update({
            "status": AVAILABLE,
            "current_campaign_id": None,
            "wrap_up_token": None,
        })
        return state

    new_state = _transition(agent_id, mutate)
    if new_state is not None and _is_auto_dial_campaign(finished[0]):
        _schedule_next_contact_request(agent_id)
    return new_state
