"""
API Views for the agent softphone and supervisor console.

Illegal transitions answer 409; a None from the state machine (lock busy,
precondition miss) answers 409 with the current state.
"""

from django.contrib.auth import authenticate
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
import orjson as json
import logging

from dialer.models import Agent, Qualification
from dialer.store import QualificationNotApplicable
from . import state as agent_state

logger = logging.getLogger(__name__)


def _state_response(agent_id, new_state):
    if new_state is None:
        return JsonResponse({
            'error': 'Agent state was not changed',
            'state': agent_state.get_agent_call_state(agent_id),
        }, status=409)
    return JsonResponse({'state': new_state})


@csrf_exempt  # Disable CSRF for simplicity (use proper auth in production)
def agent_login(request):
    if request.method == 'POST':
        try:
            data = json.loads(request.body)
            username = data.get('username')
            password = data.get('password')
        except json.JSONDecodeError:
            return JsonResponse({'error': 'Invalid JSON'}, status=400)

        user = authenticate(request, username=username, password=password)
        if user is not None:
            try:
                agent = Agent.objects.get(user=user, is_active=True)
                new_state = agent_state.login_agent(agent.id)

                return JsonResponse({
                    'id': agent.id,
                    'extension': agent.extension,
                    'password': agent.freeswitch_password,
                    'state': new_state,
                })
            except Agent.DoesNotExist:
                return JsonResponse({'error': 'Agent not found'}, status=404)
        else:
            return JsonResponse({'error': 'Invalid credentials'}, status=401)

    return JsonResponse({'error': 'Method not allowed'}, status=405)


@csrf_exempt
@require_http_methods(["GET"])
def get_state(request, agent_id):
    get_object_or_404(Agent, id=agent_id)
    return JsonResponse({'state': agent_state.get_agent_call_state(agent_id)})


@csrf_exempt
@require_http_methods(["POST"])
def set_status(request, agent_id):
    """POST /api/agents/<id>/status/ {"status": "Paused"}"""
    get_object_or_404(Agent, id=agent_id)
    try:
        data = json.loads(request.body)
        status = data.get('status')
        if status not in agent_state.ALL_STATUSES:
            return JsonResponse({'error': f'Unknown status: {status}'}, status=400)

        return _state_response(agent_id, agent_state.set_agent_status(agent_id, status))

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except agent_state.AgentStateError as e:
        return JsonResponse({'error': str(e)}, status=409)
    except Exception as e:
        logger.error(f"Error setting status of agent {agent_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def set_active_campaign(request, agent_id):
    """POST /api/agents/<id>/active-campaign/ {"campaignId": 3 | null}"""
    get_object_or_404(Agent, id=agent_id)
    try:
        data = json.loads(request.body)
        new_state = agent_state.set_active_dialing_campaign(agent_id, data.get('campaignId'))
        return _state_response(agent_id, new_state)

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except agent_state.AgentStateError as e:
        return JsonResponse({'error': str(e)}, status=409)
    except Exception as e:
        logger.error(f"Error setting active campaign of agent {agent_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def dial(request, agent_id):
    """POST /api/agents/<id>/dial/ {"destination": optional override}"""
    get_object_or_404(Agent, id=agent_id)
    try:
        data = json.loads(request.body) if request.body else {}
        new_state = agent_state.dial_current_contact(agent_id, data.get('destination'))
        if new_state is None:
            return JsonResponse({
                'error': 'Call could not be placed',
                'state': agent_state.get_agent_call_state(agent_id),
            }, status=502)
        return JsonResponse({'state': new_state})

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except agent_state.AgentStateError as e:
        return JsonResponse({'error': str(e)}, status=409)
    except Exception as e:
        logger.error(f"Error dialing for agent {agent_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def disposition(request, agent_id):
    """
    Qualify the held contact and leave the call.

    POST /api/agents/<id>/disposition/
    {
        "qualificationId": "std-94",
        "callback": {"scheduledTime": "2026-10-20T09:30:00+02:00", "notes": "after lunch"}
    }
    """
    get_object_or_404(Agent, id=agent_id)
    try:
        data = json.loads(request.body)
        qualification_id = data.get('qualificationId')
        if not qualification_id:
            return JsonResponse({'error': 'Missing required field: qualificationId'}, status=400)

        new_state = agent_state.record_disposition(agent_id, qualification_id, data.get('callback'))
        return JsonResponse({'state': new_state})

    except json.JSONDecodeError:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)
    except Qualification.DoesNotExist:
        return JsonResponse({'error': 'Qualification not found'}, status=404)
    except QualificationNotApplicable as e:
        return JsonResponse({'error': str(e)}, status=400)
    except agent_state.AgentStateError as e:
        return JsonResponse({'error': str(e)}, status=409)
    except Exception as e:
        logger.error(f"Error recording disposition for agent {agent_id}: {str(e)}")
        return JsonResponse({'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def wrap_up(request, agent_id):
    get_object_or_404(Agent, id=agent_id)
    return _state_response(agent_id, agent_state.complete_wrap_up(agent_id))


@csrf_exempt
@require_http_methods(["POST"])
def logout(request, agent_id):
    get_object_or_404(Agent, id=agent_id)
    return _state_response(agent_id, agent_state.logout_agent(agent_id))


# ============================================================================
# SUPERVISOR ACTIONS
# ============================================================================

@csrf_exempt
@require_http_methods(["POST"])
def force_pause(request, agent_id):
    get_object_or_404(Agent, id=agent_id)
    try:
        return _state_response(agent_id, agent_state.force_pause(agent_id))
    except agent_state.AgentStateError as e:
        return JsonResponse({'error': str(e)}, status=409)


@csrf_exempt
@require_http_methods(["POST"])
def force_logout(request, agent_id):
    get_object_or_404(Agent, id=agent_id)
    return _state_response(agent_id, agent_state.force_logout(agent_id))
