"""
Best-effort broadcast of logical engine events.

Events are published on a Redis pub/sub channel; the push layer that relays
them to browsers subscribes there. Delivery failures never affect the
operation that emitted the event.
"""

import logging
import time

import orjson as json

from orchestrator.redis import conn, NOTIFICATIONS_CHANNEL

logger = logging.getLogger(__name__)

CAMPAIGN_UPDATED = 'campaignUpdated'
PLANNING_UPDATED = 'planningUpdated'
CONTACT_CLAIMED = 'contactClaimed'
AGENT_STATUS_CHANGED = 'agentStatusChanged'

SUPERVISOR_ROOM = 'supervisor'
ADMIN_ROOM = 'admin'


def broadcast(event_type, payload, room=SUPERVISOR_ROOM):
    message = {
        "type": event_type,
        "room": room,
        "payload": payload,
        "emitted_at": time.time(),
    }
    try:
        conn.publish(NOTIFICATIONS_CHANNEL, json.dumps(message, default=str))
        return True
    except Exception as e:
        logger.error(f"Failed to broadcast {event_type}: {e}")
        return False
