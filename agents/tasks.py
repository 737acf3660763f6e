import logging

from CELERY_INIT import app
from .state import complete_wrap_up

logger = logging.getLogger(__name__)


@app.task(bind=True)
def end_wrap_up(self, agent_id, token):
    """Wrap-up timer expiry. Ignored when the agent already left PostCall."""
    state = complete_wrap_up(agent_id, token=token)
    if state is None:
        logger.debug(f"Wrap-up timer for agent {agent_id} expired after the agent moved on")
        return {'status': 'skipped', 'agent_id': agent_id}

    logger.info(f"Wrap-up ended for agent {agent_id}")
    return {'status': 'completed', 'agent_id': agent_id}
