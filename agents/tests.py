"""
Unit tests for agents/state.py and agents/tasks.py

Tests cover:
- Lock-based agent state transitions
- Guards on agent-initiated status changes
- Supervisor actions releasing held contacts
- Dialing, disposition and wrap-up timers
- Error handling and edge cases
"""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import orjson as json
import pytest
from django.test import Client
from django.utils import timezone

from agents import state as agent_state
from agents.state import (
    AgentStateError,
    InvalidTransition,
    assign_contact,
    can_request_contact,
    complete_wrap_up,
    dial_current_contact,
    find_contact_holder,
    force_logout,
    force_pause,
    get_agent_call_state,
    login_agent,
    logout_agent,
    record_disposition,
    set_active_dialing_campaign,
    set_agent_status,
)
from agents.tasks import end_wrap_up
from dialer.models import Agent, CallHistory, Campaign, Contact, PersonalCallback, Qualification
from dialer.tasks import request_next_contact_task
from orchestrator.redis import AGENT_STATE_LOCK_REDIS_KEY, LOCK_TIMEOUTS, SLEEP


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def redis_store():
    """Mock Redis connection backed by a dict of agent records"""
    records = {}
    with patch('agents.state.conn') as mock_conn, patch('agents.state.broadcast') as mock_broadcast:
        mock_lock = MagicMock()
        mock_lock.acquire.return_value = True
        mock_lock.owned.return_value = True
        mock_conn.lock.return_value = mock_lock
        mock_conn.hget.side_effect = lambda key, field: records.get(field)
        mock_conn.hgetall.side_effect = lambda key: dict(records)

        mock_pipe = MagicMock()
        mock_pipe.__enter__ = MagicMock(return_value=mock_pipe)
        mock_pipe.__exit__ = MagicMock(return_value=None)
        mock_pipe.hset.side_effect = lambda key, field, value: records.__setitem__(field, value)
        mock_conn.pipeline.return_value = mock_pipe

        yield SimpleNamespace(records=records, conn=mock_conn, lock=mock_lock, pipe=mock_pipe, broadcast=mock_broadcast)


@pytest.fixture
def mock_logger():
    """Mock logger"""
    with patch('agents.state.logger') as mock:
        yield mock


@pytest.fixture
def agent(db):
    return Agent.objects.create(extension="101")


@pytest.fixture
def campaign(agent):
    campaign = Campaign.objects.create(name="Energy", dialing_mode=Campaign.MANUAL)
    campaign.agents.add(agent)
    return campaign


@pytest.fixture
def sale(db):
    return Qualification.objects.create(id="std-1", code="1", description="Sale", type=Qualification.POSITIVE)


def seed(redis_store, agent_id, **fields):
    record = agent_state._default_state(agent_id)
    record.update(fields)
    redis_store.records[str(agent_id)] = json.dumps(record)
    return record


def stored(redis_store, agent_id):
    return json.loads(redis_store.records[str(agent_id)])


# ============================================================================
# TEST: reading state
# ============================================================================

class TestGetAgentCallState:

    def test_unknown_agent_is_disconnected(self, redis_store):
        state = get_agent_call_state("42")

        assert state["status"] == "Disconnected"
        assert state["current_contact_id"] is None

    def test_reads_stored_record(self, redis_store):
        seed(redis_store, "7", status="Paused", active_dialing_campaign_id=3)

        state = get_agent_call_state(7)

        assert state["status"] == "Paused"
        assert state["active_dialing_campaign_id"] == 3


# ============================================================================
# TEST: login / logout
# ============================================================================

@pytest.mark.django_db
class TestLoginLogout:

    def test_login_makes_agent_available(self, redis_store, agent):
        state = login_agent(agent.id)

        assert state["status"] == "Available"
        assert stored(redis_store, agent.id)["status"] == "Available"
        redis_store.pipe.zadd.assert_called_once()
        redis_store.lock.release.assert_called_once()
        redis_store.broadcast.assert_called_once()

    def test_login_keeps_existing_state(self, redis_store, agent):
        seed(redis_store, agent.id, status="Paused")

        assert login_agent(agent.id)["status"] == "Paused"

    def test_login_inactive_agent(self, redis_store):
        inactive = Agent.objects.create(extension="999", is_active=False)

        with pytest.raises(AgentStateError):
            login_agent(inactive.id)

    def test_logout_releases_held_contact(self, redis_store, agent, campaign):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="Available", current_contact_id=contact.id, current_campaign_id=campaign.id)

        state = logout_agent(agent.id)

        assert state["status"] == "Disconnected"
        assert state["current_contact_id"] is None
        assert state["active_dialing_campaign_id"] is None
        redis_store.pipe.zrem.assert_called_once()
        contact.refresh_from_db()
        assert contact.status == Contact.PENDING

    def test_force_logout_mid_call(self, redis_store, agent, campaign):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        assert force_logout(agent.id)["status"] == "Disconnected"
        contact.refresh_from_db()
        assert contact.status == Contact.PENDING


# ============================================================================
# TEST: agent-initiated transitions
# ============================================================================

class TestSetAgentStatus:

    def test_available_to_paused_to_training(self, redis_store):
        seed(redis_store, "1", status="Available")

        assert set_agent_status("1", "Paused")["status"] == "Paused"
        assert set_agent_status("1", "Training")["status"] == "Training"
        assert set_agent_status("1", "Available")["status"] == "Available"

    def test_pause_blocked_mid_call(self, redis_store):
        seed(redis_store, "1", status="OnCall", current_contact_id=5)

        with pytest.raises(InvalidTransition):
            set_agent_status("1", "Paused")

        assert stored(redis_store, "1")["status"] == "OnCall"
        redis_store.lock.release.assert_called_once()

    def test_pause_blocked_during_wrap_up(self, redis_store):
        seed(redis_store, "1", status="PostCall")

        with pytest.raises(InvalidTransition):
            set_agent_status("1", "Training")

    def test_pause_blocked_while_holding_contact(self, redis_store):
        seed(redis_store, "1", status="Available", current_contact_id=5)

        with pytest.raises(InvalidTransition):
            set_agent_status("1", "Paused")

    def test_call_statuses_not_selectable(self, redis_store):
        seed(redis_store, "1", status="Available")

        with pytest.raises(InvalidTransition):
            set_agent_status("1", "OnCall")

    def test_disconnected_agent_cannot_pause(self, redis_store):
        with pytest.raises(InvalidTransition):
            set_agent_status("1", "Paused")

    def test_lock_timeout(self, redis_store, mock_logger):
        seed(redis_store, "1", status="Available")
        redis_store.lock.acquire.return_value = False
        redis_store.lock.owned.return_value = False

        assert set_agent_status("1", "Paused") is None

        assert stored(redis_store, "1")["status"] == "Available"
        mock_logger.error.assert_called_once()
        redis_store.lock.release.assert_not_called()

    def test_lock_uses_redis_tuning(self, redis_store):
        seed(redis_store, "1", status="Available")

        set_agent_status("1", "Paused")

        redis_store.conn.lock.assert_called_once_with(
            f"{AGENT_STATE_LOCK_REDIS_KEY}1", timeout=LOCK_TIMEOUTS, sleep=SLEEP
        )
        redis_store.lock.acquire.assert_called_once_with(blocking_timeout=LOCK_TIMEOUTS)

    def test_redis_failure_returns_none(self, redis_store, mock_logger):
        seed(redis_store, "1", status="Available")
        redis_store.pipe.execute.side_effect = Exception("Redis down")

        assert set_agent_status("1", "Paused") is None

        mock_logger.error.assert_called_once()
        redis_store.lock.release.assert_called_once()


# ============================================================================
# TEST: supervisor actions / campaign selection
# ============================================================================

@pytest.mark.django_db
class TestSupervisorActions:

    def test_force_pause_releases_held_contact(self, redis_store, agent, campaign):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        state = force_pause(agent.id)

        assert state["status"] == "Paused"
        assert state["current_contact_id"] is None
        contact.refresh_from_db()
        assert contact.status == Contact.PENDING

    def test_force_pause_logged_out_agent(self, redis_store, agent):
        with pytest.raises(InvalidTransition):
            force_pause(agent.id)

    def test_active_campaign_must_be_assigned(self, redis_store, agent, campaign):
        seed(redis_store, agent.id, status="Available")
        foreign = Campaign.objects.create(name="Foreign")

        assert set_active_dialing_campaign(agent.id, campaign.id)["active_dialing_campaign_id"] == campaign.id
        with pytest.raises(AgentStateError):
            set_active_dialing_campaign(agent.id, foreign.id)

    def test_clear_active_campaign(self, redis_store, agent, campaign):
        seed(redis_store, agent.id, status="Paused", active_dialing_campaign_id=campaign.id)

        assert set_active_dialing_campaign(agent.id, None)["active_dialing_campaign_id"] is None


# ============================================================================
# TEST: assignment and dialing
# ============================================================================

@pytest.mark.django_db
class TestAssignAndDial:

    def test_assign_to_idle_agent(self, redis_store):
        seed(redis_store, "1", status="Available")

        state = assign_contact("1", 10, 3)

        assert state["status"] == "Available"
        assert state["current_contact_id"] == 10
        redis_store.pipe.zrem.assert_called_once()

    def test_assign_refused_when_not_idle(self, redis_store):
        seed(redis_store, "1", status="Paused")

        assert assign_contact("1", 10, 3) is None
        assert stored(redis_store, "1")["current_contact_id"] is None

    def test_dial_held_contact(self, redis_store, agent, campaign):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="Available", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with patch('agents.state.originate_call', return_value=(True, "uuid-1")) as mock_originate:
            state = dial_current_contact(agent.id)

        mock_originate.assert_called_once_with(agent.id, "0601", campaign.id)
        assert state["status"] == "OnCall"
        assert state["current_call_id"] == "uuid-1"

    def test_failed_dial_keeps_contact(self, redis_store, agent, campaign):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="Available", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with patch('agents.state.originate_call', return_value=(False, None)):
            assert dial_current_contact(agent.id, "0700") is None

        record = stored(redis_store, agent.id)
        assert record["status"] == "Available"
        assert record["current_contact_id"] == contact.id

    def test_dial_without_contact(self, redis_store):
        seed(redis_store, "1", status="Available")

        with pytest.raises(InvalidTransition):
            dial_current_contact("1")


# ============================================================================
# TEST: disposition and wrap-up
# ============================================================================

@pytest.mark.django_db
class TestDisposition:

    def test_disposition_with_wrap_up(self, redis_store, agent, campaign, sale):
        campaign.wrap_up_time = 15
        campaign.save()
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with patch.object(end_wrap_up, 'apply_async') as mock_timer:
            state = record_disposition(agent.id, sale.id)

        assert state["status"] == "PostCall"
        assert state["current_contact_id"] is None
        assert mock_timer.call_args.kwargs["countdown"] == 16
        assert mock_timer.call_args.kwargs["args"] == [str(agent.id), state["wrap_up_token"]]
        contact.refresh_from_db()
        assert contact.status == Contact.QUALIFIED

    def test_disposition_without_wrap_up_requests_next(self, redis_store, agent, campaign, sale):
        campaign.dialing_mode = Campaign.PROGRESSIVE
        campaign.save()
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with patch.object(request_next_contact_task, 'apply_async') as mock_request:
            state = record_disposition(agent.id, sale.id)

        assert state["status"] == "Available"
        assert state["current_campaign_id"] is None
        mock_request.assert_called_once()

    def test_manual_campaign_waits_after_disposition(self, redis_store, agent, campaign, sale):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="Available", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with patch.object(request_next_contact_task, 'apply_async') as mock_request:
            assert record_disposition(agent.id, sale.id)["status"] == "Available"

        mock_request.assert_not_called()

    def test_no_held_contact_is_noop(self, redis_store, agent, sale):
        seed(redis_store, agent.id, status="PostCall")

        assert record_disposition(agent.id, sale.id)["status"] == "PostCall"
        assert not CallHistory.objects.exists()

    def test_callback_requires_time(self, redis_store, agent, campaign):
        Qualification.objects.create(id="std-94", type=Qualification.NEUTRAL)
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with pytest.raises(AgentStateError):
            record_disposition(agent.id, "std-94")

        assert stored(redis_store, agent.id)["status"] == "OnCall"
        contact.refresh_from_db()
        assert contact.status == Contact.CALLED

    def test_callback_persisted_before_leaving_call(self, redis_store, agent, campaign):
        Qualification.objects.create(id="std-94", type=Qualification.NEUTRAL)
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)
        when = (timezone.now() + timedelta(days=1)).isoformat()

        state = record_disposition(agent.id, "std-94", {"scheduledTime": when, "notes": "evening"})

        assert state["status"] == "Available"
        callback = PersonalCallback.objects.get()
        assert callback.notes == "evening"
        assert callback.agent_id == agent.id
        contact.refresh_from_db()
        assert contact.status == Contact.QUALIFIED


@pytest.mark.django_db
class TestQualifyEndpointRouting:

    def test_find_contact_holder(self, redis_store):
        seed(redis_store, "1", status="Available")
        seed(redis_store, "2", status="OnCall", current_contact_id=5)

        assert find_contact_holder(5) == "2"
        assert find_contact_holder(6) is None

    def test_qualifying_held_contact_frees_agent(self, redis_store, agent, campaign, sale):
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(
            redis_store, agent.id, status="OnCall", current_contact_id=contact.id,
            current_campaign_id=campaign.id, active_dialing_campaign_id=campaign.id,
        )

        response = Client().post(
            f'/api/dialer/contacts/{contact.id}/qualify/',
            data=json.dumps({"qualificationId": sale.id}),
            content_type='application/json',
        )

        assert response.status_code == 200
        assert response.json()["qualified"] is True
        state = stored(redis_store, agent.id)
        assert state["status"] == "Available"
        assert state["current_contact_id"] is None
        assert can_request_contact(state)
        contact.refresh_from_db()
        assert contact.status == Contact.QUALIFIED
        assert CallHistory.objects.get().agent_id == agent.id

    def test_qualifying_held_contact_starts_wrap_up(self, redis_store, agent, campaign, sale):
        campaign.wrap_up_time = 10
        campaign.save()
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        with patch.object(end_wrap_up, 'apply_async') as mock_timer:
            response = Client().post(
                f'/api/dialer/contacts/{contact.id}/qualify/',
                data=json.dumps({"qualificationId": sale.id}),
                content_type='application/json',
            )

        assert response.json()["agentState"]["status"] == "PostCall"
        mock_timer.assert_called_once()

    def test_callback_without_time_is_conflict(self, redis_store, agent, campaign):
        Qualification.objects.create(id="std-94", type=Qualification.NEUTRAL)
        contact = Contact.objects.create(campaign=campaign, phone_number="0601", status=Contact.CALLED)
        seed(redis_store, agent.id, status="OnCall", current_contact_id=contact.id, current_campaign_id=campaign.id)

        response = Client().post(
            f'/api/dialer/contacts/{contact.id}/qualify/',
            data=json.dumps({"qualificationId": "std-94"}),
            content_type='application/json',
        )

        assert response.status_code == 409
        assert stored(redis_store, agent.id)["current_contact_id"] == contact.id


@pytest.mark.django_db
class TestWrapUp:

    def test_timer_ends_matching_wrap_up(self, redis_store, campaign):
        seed(redis_store, "1", status="PostCall", current_campaign_id=campaign.id, wrap_up_token="abc")

        result = end_wrap_up("1", "abc")

        assert result["status"] == "completed"
        assert stored(redis_store, "1")["status"] == "Available"

    def test_stale_timer_is_ignored(self, redis_store, campaign):
        seed(redis_store, "1", status="PostCall", current_campaign_id=campaign.id, wrap_up_token="new")

        assert complete_wrap_up("1", token="old") is None
        assert stored(redis_store, "1")["status"] == "PostCall"

    def test_explicit_wrap_up_via_status(self, redis_store, campaign):
        seed(redis_store, "1", status="PostCall", current_campaign_id=campaign.id, wrap_up_token="abc")

        assert set_agent_status("1", "Available")["status"] == "Available"

    def test_wrap_up_in_auto_dial_campaign_requests_next(self, redis_store, campaign):
        campaign.dialing_mode = Campaign.PREDICTIVE
        campaign.save()
        seed(redis_store, "1", status="PostCall", current_campaign_id=campaign.id, wrap_up_token="abc")

        with patch.object(request_next_contact_task, 'apply_async') as mock_request:
            complete_wrap_up("1")

        mock_request.assert_called_once()
        assert mock_request.call_args.kwargs["args"] == ["1"]
