"""
Unit tests for dialer/distribution.py, dialer/campaigns.py, dialer/tasks.py
and the dialer API views.

The agent call-state store (Redis) is mocked; contacts and campaigns live
in the test database.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import orjson as json
import pytest
from django.test import Client

from dialer.campaigns import delete_campaign, get_campaign_stats, save_campaign
from dialer.distribution import get_agent_campaigns, request_next_contact
from dialer.models import Agent, CallHistory, Campaign, Contact, Qualification
from dialer.tasks import request_next_contact_task, run_auto_dial_cycle


# ============================================================================
# FIXTURES
# ============================================================================

def available_state(agent_id, active_campaign_id=1, **overrides):
    state = {
        "agent_id": str(agent_id),
        "status": "Available",
        "current_contact_id": None,
        "current_campaign_id": None,
        "active_dialing_campaign_id": active_campaign_id,
        "current_call_id": None,
        "wrap_up_token": None,
        "status_changed_at": None,
    }
    state.update(overrides)
    return state


@pytest.fixture
def agent(db):
    return Agent.objects.create(extension="101")


@pytest.fixture
def sale(db):
    return Qualification.objects.create(id="std-1", code="1", description="Sale", type=Qualification.POSITIVE)


@pytest.fixture
def engine(agent):
    """Distribution engine with the agent state store mocked out."""
    with patch('dialer.distribution.conn') as mock_conn, \
            patch('dialer.distribution.get_agent_call_state') as mock_get_state, \
            patch('dialer.distribution.assign_contact') as mock_assign, \
            patch('dialer.distribution.dial_current_contact') as mock_dial, \
            patch('dialer.distribution.broadcast') as mock_broadcast:
        mock_lock = MagicMock()
        mock_lock.acquire.return_value = True
        mock_lock.owned.return_value = True
        mock_conn.lock.return_value = mock_lock

        mock_get_state.return_value = available_state(agent.id)
        mock_assign.side_effect = lambda agent_id, contact_id, campaign_id: available_state(
            agent_id, current_contact_id=contact_id, current_campaign_id=campaign_id
        )

        yield SimpleNamespace(
            conn=mock_conn,
            lock=mock_lock,
            get_state=mock_get_state,
            assign=mock_assign,
            dial=mock_dial,
            broadcast=mock_broadcast,
        )


def make_campaign(name, agent, priority=5, **kwargs):
    kwargs.setdefault('dialing_mode', Campaign.MANUAL)
    campaign = Campaign.objects.create(name=name, priority=priority, **kwargs)
    campaign.agents.add(agent)
    return campaign


def make_contact(campaign, phone_number, status=Contact.PENDING, **kwargs):
    return Contact.objects.create(campaign=campaign, phone_number=phone_number, status=status, **kwargs)


def record_positive(campaign, qualification, postal_code):
    contact = make_contact(campaign, f"09{postal_code}", status=Contact.QUALIFIED, postal_code=postal_code)
    CallHistory.objects.create(contact=contact, campaign=campaign, qualification=qualification)
    return contact


# ============================================================================
# TEST: request_next_contact
# ============================================================================

@pytest.mark.django_db
class TestRequestNextContact:

    def test_claims_and_assigns_contact(self, engine, agent):
        campaign = make_campaign("Energy", agent)
        contact = make_contact(campaign, "0601")

        claimed, claimed_campaign = request_next_contact(agent.id)

        assert claimed.pk == contact.pk
        assert claimed_campaign.pk == campaign.pk
        engine.assign.assert_called_once_with(str(agent.id), contact.pk, campaign.pk)
        engine.lock.release.assert_called_once()
        contact.refresh_from_db()
        assert contact.status == Contact.CALLED

    def test_higher_priority_campaign_served_first(self, engine, agent):
        low = make_campaign("A", agent, priority=5)
        high = make_campaign("B", agent, priority=10)
        make_contact(low, "0601")
        make_contact(high, "0701")
        make_contact(high, "0702")

        served = [request_next_contact(agent.id)[1].pk for _ in range(3)]

        assert served == [high.pk, high.pk, low.pk]
        assert request_next_contact(agent.id) == (None, None)

    def test_same_priority_ordered_by_name(self, agent):
        zulu = make_campaign("Zulu", agent, priority=5)
        alpha = make_campaign("Alpha", agent, priority=5)

        assert [campaign.pk for campaign in get_agent_campaigns(agent.id)] == [alpha.pk, zulu.pk]

    def test_inactive_and_unassigned_campaigns_skipped(self, engine, agent):
        inactive = make_campaign("Inactive", agent, is_active=False)
        unassigned = Campaign.objects.create(name="Unassigned", dialing_mode=Campaign.MANUAL)
        make_contact(inactive, "0601")
        make_contact(unassigned, "0602")

        assert request_next_contact(agent.id) == (None, None)

    def test_quota_withholds_segment(self, engine, agent, sale):
        campaign = make_campaign("Quota", agent, quota_rules=[
            {"id": "q1", "contactField": "postalCode", "operator": "equals", "value": "75000", "limit": 2},
        ])
        record_positive(campaign, sale, "75000")
        record_positive(campaign, sale, "75000")
        capped = make_contact(campaign, "0601", postal_code="75000")
        open_segment = make_contact(campaign, "0602", postal_code="69000")

        claimed, _ = request_next_contact(agent.id)

        assert claimed.pk == open_segment.pk
        assert request_next_contact(agent.id) == (None, None)
        capped.refresh_from_db()
        assert capped.status == Contact.PENDING

    def test_quota_below_limit_still_claimable(self, engine, agent, sale):
        campaign = make_campaign("Quota", agent, quota_rules=[
            {"id": "q1", "contactField": "postalCode", "operator": "equals", "value": "75000", "limit": 2},
        ])
        record_positive(campaign, sale, "75000")
        contact = make_contact(campaign, "0601", postal_code="75000")

        claimed, _ = request_next_contact(agent.id)

        assert claimed.pk == contact.pk

    def test_exclude_rule_dominates(self, engine, agent):
        campaign = make_campaign("Filtered", agent, filter_rules=[
            {"id": "f1", "type": "include", "contactField": "postalCode", "operator": "starts_with", "value": "75"},
            {"id": "f2", "type": "exclude", "contactField": "postalCode", "operator": "equals", "value": "75016"},
        ])
        make_contact(campaign, "0601", postal_code="75016")

        assert request_next_contact(agent.id) == (None, None)

    def test_on_call_agent_does_not_touch_store(self, engine, agent):
        campaign = make_campaign("Energy", agent)
        make_contact(campaign, "0601")
        engine.get_state.return_value = available_state(agent.id, status="OnCall")

        with patch('dialer.distribution.claim_next_contact') as mock_claim:
            assert request_next_contact(agent.id) == (None, None)

        mock_claim.assert_not_called()
        engine.assign.assert_not_called()

    def test_no_active_campaign_returns_none(self, engine, agent):
        campaign = make_campaign("Energy", agent)
        make_contact(campaign, "0601")
        engine.get_state.return_value = available_state(agent.id, active_campaign_id=None)

        assert request_next_contact(agent.id) == (None, None)
        assert campaign.contacts.get().status == Contact.PENDING

    def test_request_in_flight_returns_none(self, engine, agent):
        make_contact(make_campaign("Energy", agent), "0601")
        engine.lock.acquire.return_value = False

        assert request_next_contact(agent.id) == (None, None)
        engine.get_state.assert_not_called()

    def test_failed_assignment_releases_contact(self, engine, agent):
        campaign = make_campaign("Energy", agent)
        contact = make_contact(campaign, "0601")
        engine.assign.side_effect = None
        engine.assign.return_value = None

        assert request_next_contact(agent.id) == (None, None)

        contact.refresh_from_db()
        assert contact.status == Contact.PENDING

    def test_manual_campaign_waits_for_click(self, engine, agent):
        make_contact(make_campaign("Manual", agent), "0601")

        request_next_contact(agent.id)

        engine.dial.assert_not_called()

    def test_progressive_campaign_dials(self, engine, agent):
        make_contact(make_campaign("Progressive", agent, dialing_mode=Campaign.PROGRESSIVE), "0601")

        request_next_contact(agent.id)

        engine.dial.assert_called_once_with(str(agent.id))


# ============================================================================
# TEST: campaigns
# ============================================================================

@pytest.mark.django_db
class TestSaveCampaign:

    def test_create_with_agents_and_rules(self, agent):
        other = Agent.objects.create(extension="102")

        campaign = save_campaign({
            "name": "Energy",
            "priority": 10,
            "filterRules": [{"id": "f1", "ruleType": "exclude", "contactField": "postalCode", "operator": "equals", "value": "75016"}],
            "assignedAgentIds": [agent.id, other.id],
        })

        assert campaign.priority == 10
        assert campaign.filter_rules[0]["type"] == "exclude"
        assert set(campaign.agents.values_list('pk', flat=True)) == {agent.id, other.id}

    def test_update_syncs_agents(self, agent):
        other = Agent.objects.create(extension="102")
        campaign = save_campaign({"name": "Energy", "assignedAgentIds": [agent.id]})

        save_campaign({"assignedAgentIds": [other.id]}, campaign_id=campaign.id)

        campaign.refresh_from_db()
        assert list(campaign.agents.values_list('pk', flat=True)) == [other.id]
        assert campaign.name == "Energy"

    def test_invalid_dialing_mode(self):
        with pytest.raises(ValueError):
            save_campaign({"name": "Energy", "dialingMode": "robocall"})

    def test_delete_cascades_and_notifies(self, agent, sale, django_capture_on_commit_callbacks):
        campaign = make_campaign("Energy", agent)
        record_positive(campaign, sale, "75000")
        make_contact(campaign, "0601")
        keep = make_campaign("Other", agent)
        make_contact(keep, "0602")

        with patch('dialer.campaigns.broadcast') as mock_broadcast:
            with django_capture_on_commit_callbacks(execute=True):
                assert delete_campaign(campaign.id) is True

        assert not Campaign.objects.filter(pk=campaign.id).exists()
        assert list(Contact.objects.values_list('phone_number', flat=True)) == ["0602"]
        assert not CallHistory.objects.exists()
        assert Qualification.objects.filter(pk=sale.pk).exists()
        assert mock_broadcast.call_count == 2
        assert mock_broadcast.call_args.args[1] == {"campaignId": campaign.id}

    def test_delete_unknown_campaign(self):
        with patch('dialer.campaigns.broadcast') as mock_broadcast:
            assert delete_campaign(999) is False

        mock_broadcast.assert_not_called()

    def test_stats_report_quota_progress(self, agent, sale):
        campaign = make_campaign("Quota", agent, quota_rules=[
            {"id": "q1", "contactField": "postalCode", "operator": "equals", "value": "75000", "limit": 4},
        ])
        record_positive(campaign, sale, "75000")
        make_contact(campaign, "0601")

        stats = get_campaign_stats(campaign)

        assert stats["statuses"] == {"pending": 1, "called": 0, "qualified": 1}
        assert stats["quotas"][0]["current"] == 1
        assert stats["quotas"][0]["progress"] == 25.0


# ============================================================================
# TEST: celery tasks
# ============================================================================

@pytest.mark.django_db
class TestAutoDialCycle:

    def test_dispatches_only_idle_auto_dial_agents(self, agent):
        progressive = make_campaign("Progressive", agent, dialing_mode=Campaign.PROGRESSIVE)
        manual = make_campaign("Manual", agent)
        states = {
            "1": available_state(1, active_campaign_id=progressive.id),
            "2": available_state(2, active_campaign_id=manual.id),
            "3": available_state(3, active_campaign_id=progressive.id, current_contact_id=9),
            "4": available_state(4, active_campaign_id=None),
        }

        with patch('dialer.tasks.get_available_agent_ids', return_value=list(states)), \
                patch('dialer.tasks.get_agent_call_state', side_effect=states.get), \
                patch.object(request_next_contact_task, 'delay') as mock_delay:
            result = run_auto_dial_cycle()

        mock_delay.assert_called_once_with("1")
        assert result["dispatched"] == 1

    def test_request_task_reports_empty_pool(self):
        with patch('dialer.tasks.request_next_contact', return_value=(None, None)):
            assert request_next_contact_task("1") == {'status': 'empty', 'agent_id': "1"}


# ============================================================================
# TEST: API views
# ============================================================================

@pytest.mark.django_db
class TestDialerViews:

    def setup_method(self):
        self.client = Client()

    def post(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type='application/json')

    def test_import_endpoint(self, agent):
        campaign = make_campaign("Energy", agent)

        response = self.post(f'/api/dialer/campaigns/{campaign.id}/contacts/import/', {
            "contacts": [{"originalRow": 2, "phoneNumber": "0601"}, {"originalRow": 3}],
            "dedup": {"enabled": True, "fieldIds": ["phoneNumber"]},
        })

        body = response.json()
        assert response.status_code == 200
        assert len(body["valids"]) == 1
        assert body["invalids"][0]["row"] == 3

    def test_import_keeps_valid_rows_next_to_malformed_ones(self, agent):
        campaign = make_campaign("Energy", agent)

        response = self.post(f'/api/dialer/campaigns/{campaign.id}/contacts/import/', {
            "contacts": [{"phoneNumber": "0601"}, "garbage"],
        })

        body = response.json()
        assert response.status_code == 200
        assert [contact["phoneNumber"] for contact in body["valids"]] == ["0601"]
        assert body["invalids"] == [{"row": 2, "reason": "Record must be an object."}]
        assert campaign.contacts.count() == 1

    def test_import_rejects_invalid_json(self, agent):
        campaign = make_campaign("Energy", agent)

        response = self.client.post(
            f'/api/dialer/campaigns/{campaign.id}/contacts/import/', data=b'{oops', content_type='application/json'
        )

        assert response.status_code == 400

    def test_import_unknown_campaign(self):
        response = self.post('/api/dialer/campaigns/999/contacts/import/', {"contacts": []})

        assert response.status_code == 404

    def test_next_contact_endpoint(self, engine, agent):
        contact = make_contact(make_campaign("Energy", agent), "0601")

        response = self.post('/api/dialer/contacts/next/', {"agentId": agent.id})

        assert response.status_code == 200
        assert response.json()["contact"]["id"] == contact.id

    def test_next_contact_empty_pool(self, engine, agent):
        response = self.post('/api/dialer/contacts/next/', {"agentId": agent.id})

        assert response.status_code == 200
        assert response.json() == {"contact": None, "campaign": None}

    def test_qualify_and_recycle_endpoints(self, agent):
        no_answer = Qualification.objects.create(id="std-2", type=Qualification.NEUTRAL)
        campaign = make_campaign("Energy", agent)
        contact = make_contact(campaign, "0601", status=Contact.CALLED)

        with patch('dialer.campaigns.broadcast'), patch('agents.state.conn') as mock_conn:
            mock_conn.hgetall.return_value = {}
            qualified = self.post(f'/api/dialer/contacts/{contact.id}/qualify/', {"qualificationId": no_answer.id})
            recycled = self.post(f'/api/dialer/campaigns/{campaign.id}/recycle/', {"qualificationId": no_answer.id})

        assert qualified.json() == {"qualified": True}
        assert recycled.json() == {"recycled": 1}
        contact.refresh_from_db()
        assert contact.status == Contact.PENDING

    def test_delete_campaign_endpoint(self, agent):
        campaign = make_campaign("Energy", agent)

        with patch('dialer.campaigns.broadcast'):
            response = self.client.delete(f'/api/dialer/campaigns/{campaign.id}/delete/')
            missing = self.client.delete(f'/api/dialer/campaigns/{campaign.id}/delete/')

        assert response.status_code == 200
        assert response.json() == {"deleted": True}
        assert missing.status_code == 404

    def test_create_campaign_endpoint(self, agent):
        with patch('dialer.campaigns.broadcast'):
            response = self.post('/api/dialer/campaigns/create/', {"name": "Energy", "assignedAgentIds": [agent.id]})

        assert response.status_code == 201
        assert response.json()["assignedAgentIds"] == [agent.id]
