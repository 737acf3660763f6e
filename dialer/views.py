"""
API Views for Dialer endpoints.

JSON endpoints for campaign management, contact import, distribution,
qualification and recycling.
"""

from django.core.exceptions import ValidationError
from django.http import Http404, JsonResponse
from django.views.decorators.http import require_http_methods
from django.views.decorators.csrf import csrf_exempt
from django.shortcuts import get_object_or_404
import orjson as json
import logging

from agents import state as agent_state
from orchestrator.notifications import PLANNING_UPDATED, broadcast
from . import campaigns as campaign_service
from . import store
from .distribution import request_next_contact
from .imports import import_contacts as run_import
from .models import Agent, Campaign, Contact, PersonalCallback, Qualification

logger = logging.getLogger(__name__)


def _serialize_campaign(campaign):
    """Convert campaign to JSON dict."""
    return {
        'id': campaign.id,
        'name': campaign.name,
        'description': campaign.description,
        'priority': campaign.priority,
        'isActive': campaign.is_active,
        'dialingMode': campaign.dialing_mode,
        'qualificationGroupId': campaign.qualification_group_id,
        'callerId': campaign.caller_id,
        'wrapUpTime': campaign.wrap_up_time,
        'quotaRules': campaign.quota_rules,
        'filterRules': campaign.filter_rules,
        'assignedAgentIds': sorted(campaign.agents.values_list('pk', flat=True)),
        'createdAt': campaign.created_at.isoformat(),
        'updatedAt': campaign.updated_at.isoformat(),
    }


def _serialize_contact(contact):
    return {
        'id': contact.id,
        'campaignId': contact.campaign_id,
        'firstName': contact.first_name,
        'lastName': contact.last_name,
        'phoneNumber': contact.phone_number,
        'postalCode': contact.postal_code,
        'customFields': contact.custom_fields,
        'status': contact.status,
        'lastQualificationId': contact.last_qualification_id,
    }


def _serialize_callback(callback):
    return {
        'id': callback.id,
        'agentId': callback.agent_id,
        'contactId': callback.contact_id,
        'campaignId': callback.campaign_id,
        'contactName': callback.contact_name,
        'contactNumber': callback.contact_number,
        'scheduledTime': callback.scheduled_time.isoformat(),
        'notes': callback.notes,
        'status': callback.status,
    }


# ============================================================================
# CAMPAIGNS
# ============================================================================

@csrf_exempt
@require_http_methods(["GET"])
def list_campaigns(request):
    """List campaigns, optionally only those assigned to `agent_id`."""
    try:
        campaigns = Campaign.objects.all()

        agent_id = request.GET.get('agent_id')
        if agent_id:
            campaigns = campaigns.filter(agents__id=agent_id, is_active=True)

        campaigns = campaigns.order_by('-priority', 'name')[:1000]
        results = [_serialize_campaign(campaign) for campaign in campaigns]

        return JsonResponse({'count': len(results), 'results': results})
    except Exception as e:
        logger.error(f"Error listing campaigns: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def create_campaign(request):
    """
    Create a new campaign.

    POST /api/dialer/campaigns/create/
    {
        "name": "Energy Q3",
        "priority": 10,
        "dialingMode": "progressive",
        "wrapUpTime": 15,
        "filterRules": [{"id": "f1", "type": "exclude", "contactField": "postalCode", "operator": "starts_with", "value": "97"}],
        "quotaRules": [{"id": "q1", "contactField": "postalCode", "operator": "equals", "value": "75000", "limit": 20}],
        "assignedAgentIds": [1, 2]
    }
    """
    try:
        data = json.loads(request.body)
        campaign = campaign_service.save_campaign(data)
        return JsonResponse(_serialize_campaign(campaign), status=201)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except (ValueError, ValidationError) as e:
        return JsonResponse({'error': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Error creating campaign: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def update_campaign(request, campaign_id):
    get_object_or_404(Campaign, id=campaign_id)
    try:
        data = json.loads(request.body)
        campaign = campaign_service.save_campaign(data, campaign_id=campaign_id)
        return JsonResponse(_serialize_campaign(campaign))

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except (ValueError, ValidationError) as e:
        return JsonResponse({'error': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Error updating campaign {campaign_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["DELETE"])
def delete_campaign(request, campaign_id):
    get_object_or_404(Campaign, id=campaign_id)
    try:
        campaign_service.delete_campaign(campaign_id)
        return JsonResponse({'deleted': True})
    except Exception as e:
        logger.error(f"Error deleting campaign {campaign_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["GET"])
def get_campaign_stats(request, campaign_id):
    campaign = get_object_or_404(Campaign, id=campaign_id)
    try:
        return JsonResponse(campaign_service.get_campaign_stats(campaign))
    except Exception as e:
        logger.error(f"Error getting campaign stats: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


# ============================================================================
# CONTACT IMPORT / RECYCLING
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def import_contacts(request, campaign_id):
    """
    Bulk import contacts.

    POST /api/dialer/campaigns/<id>/contacts/import/
    {
        "contacts": [{"originalRow": 2, "firstName": "Ana", "phoneNumber": "0601020304", "customFields": {}}],
        "dedup": {"enabled": true, "fieldIds": ["phoneNumber"]}
    }
    """
    get_object_or_404(Campaign, id=campaign_id)
    try:
        data = json.loads(request.body)
        contacts = data.get('contacts')
        if not isinstance(contacts, list):
            return JsonResponse({'error': 'contacts must be a list'}, status=400)

        result = run_import(campaign_id, contacts, data.get('dedup'))

        return JsonResponse({
            'valids': [_serialize_contact(contact) for contact in result['valids']],
            'invalids': result['invalids'],
        })

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Exception as e:
        logger.error(f"Error importing contacts into campaign {campaign_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def recycle_contacts(request, campaign_id):
    get_object_or_404(Campaign, id=campaign_id)
    try:
        data = json.loads(request.body)
        qualification_id = data.get('qualificationId')
        if not qualification_id:
            return JsonResponse({'error': 'Missing required field: qualificationId'}, status=400)

        count = store.recycle_contacts(campaign_id, qualification_id)
        if count:
            campaign_service.notify_campaign_updated(campaign_id)
        return JsonResponse({'recycled': count})

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Exception as e:
        logger.error(f"Error recycling contacts of campaign {campaign_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


# ============================================================================
# DISTRIBUTION / QUALIFICATION
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def next_contact(request):
    """
    POST /api/dialer/contacts/next/ {"agentId": 1}

    An empty result is a normal outcome: {"contact": null, "campaign": null}.
    """
    try:
        data = json.loads(request.body)
        agent_id = data.get('agentId')
        if not agent_id:
            return JsonResponse({'error': 'Missing required field: agentId'}, status=400)
        get_object_or_404(Agent, id=agent_id)

        contact, campaign = request_next_contact(agent_id)
        return JsonResponse({
            'contact': _serialize_contact(contact) if contact else None,
            'campaign': _serialize_campaign(campaign) if campaign else None,
        })

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Http404:
        return JsonResponse({'error': 'Agent not found'}, status=404)
    except Exception as e:
        logger.error(f"Error requesting next contact: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def qualify_contact(request, contact_id):
    get_object_or_404(Contact, id=contact_id)
    try:
        data = json.loads(request.body)
        qualification_id = data.get('qualificationId')
        if not qualification_id:
            return JsonResponse({'error': 'Missing required field: qualificationId'}, status=400)

        holder = agent_state.find_contact_holder(contact_id)
        if holder is not None:
            # the agent holding the contact moves on to wrap-up or the next contact
            new_state = agent_state.record_disposition(holder, qualification_id, data.get('callback'))
            qualified = Contact.objects.filter(pk=contact_id, status=Contact.QUALIFIED).exists()
            return JsonResponse({'qualified': qualified, 'agentState': new_state})

        history = store.qualify_contact(contact_id, qualification_id, data.get('agentId'))
        return JsonResponse({'qualified': history is not None})

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except agent_state.AgentStateError as e:
        return JsonResponse({'error': str(e)}, status=409)
    except Qualification.DoesNotExist:
        return JsonResponse({'error': 'Qualification not found'}, status=404)
    except store.QualificationNotApplicable as e:
        return JsonResponse({'error': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Error qualifying contact {contact_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def release_contact(request, contact_id):
    get_object_or_404(Contact, id=contact_id)
    try:
        return JsonResponse({'released': store.release_contact(contact_id)})
    except Exception as e:
        logger.error(f"Error releasing contact {contact_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def add_contact_note(request, contact_id):
    get_object_or_404(Contact, id=contact_id)
    try:
        data = json.loads(request.body)
        note = store.add_contact_note(contact_id, data.get('note'), data.get('agentId'))
        return JsonResponse({
            'id': note.id,
            'contactId': note.contact_id,
            'campaignId': note.campaign_id,
            'agentId': note.agent_id,
            'note': note.note,
            'createdAt': note.created_at.isoformat(),
        }, status=201)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except ValueError as e:
        return JsonResponse({'error': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Error adding note to contact {contact_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


# ============================================================================
# PERSONAL CALLBACKS
# ============================================================================

@csrf_exempt
@require_http_methods(["GET"])
def list_callbacks(request):
    try:
        callbacks = PersonalCallback.objects.filter(status=PersonalCallback.PENDING)

        agent_id = request.GET.get('agent_id')
        if agent_id:
            callbacks = callbacks.filter(agent_id=agent_id)

        results = [_serialize_callback(callback) for callback in callbacks[:1000]]
        return JsonResponse({'count': len(results), 'results': results})
    except Exception as e:
        logger.error(f"Error listing callbacks: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def update_callback_status(request, callback_id):
    """POST /api/dialer/callbacks/<id>/status/ {"status": "completed" | "cancelled"}"""
    try:
        data = json.loads(request.body)
        callback = store.update_callback_status(callback_id, data.get('status'))
        if callback is None:
            return JsonResponse({'error': 'Callback not found'}, status=404)

        broadcast(PLANNING_UPDATED, {'agentId': callback.agent_id, 'callbackId': callback.id})
        return JsonResponse(_serialize_callback(callback))

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except ValueError as e:
        return JsonResponse({'error': str(e)}, status=400)
    except Exception as e:
        logger.error(f"Error updating callback {callback_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)
