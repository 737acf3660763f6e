import redis
from django.conf import settings

##### NAMESPACES
AGENT_STATE_REDIS_KEY = 'AGENT_CALL_STATES' #hash where key is agent id, value is AgentCallState json
AGENT_STATE_LOCK_REDIS_KEY = 'AGENT_CALL_STATE_LOCK:'
AGENT_DISTRIBUTION_LOCK_REDIS_KEY = 'AGENT_DISTRIBUTION_LOCK:' #held while a next-contact request is in flight for one agent
AVAILABLE_AGENTS_REDIS_KEY = 'AVAILABLE_AGENTS' #sorted set of Available agent ids, scored by time they became available
NOTIFICATIONS_CHANNEL = 'orchestrator:notifications' #pub/sub channel for supervisors and dashboards
#####

conn = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True
)

LOCK_TIMEOUTS = 3
SLEEP = 0.05
