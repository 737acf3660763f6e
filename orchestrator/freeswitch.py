import greenswitch
from django.conf import settings
import logging

logger = logging.getLogger(__name__)


class FreeSwitchManager:
    """Lazily connected ESL client, reconnects after any failed command."""

    def __init__(self):
        self._esl = None

    @property
    def esl(self):
        if self._esl is None or not self._esl.connected:
            logger.info("Opening FreeSWITCH ESL connection")
            self._esl = greenswitch.InboundESL(
                settings.FREESWITCH_ESL_HOST,
                settings.FREESWITCH_ESL_PORT,
                settings.FREESWITCH_ESL_PASSWORD
            )
            try:
                self._esl.connect()
            except Exception as e:
                logger.error(f"ESL connection to {settings.FREESWITCH_ESL_HOST} failed: {e}")
                self._esl = None
        return self._esl

    def _send(self, command):
        esl = self.esl
        if esl is None:
            return None
        try:
            return esl.send(command).data
        except Exception as e:
            logger.error(f"ESL command '{command.split(' ')[0]} ...' failed: {e}")
            self._esl = None
            return None

    def bgapi(self, command):
        """Background API command, returns '+OK Job-UUID: <uuid>' on acceptance."""
        return self._send(f"bgapi {command}")


fs_manager = FreeSwitchManager()
