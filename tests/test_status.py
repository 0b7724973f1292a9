from LedgerSync.core.signals import signals
from LedgerSync.status import status
from tests.base import BaseTestCase


class StatusTests(BaseTestCase):

    def test_every_status_has_a_message(self):
        for s in status.Status:
            self.assertIn(s, status.STATUS_MESSAGE, f'{s} has no message')
            self.assertEqual(status.get_message(s), status.STATUS_MESSAGE[s])

    def test_exception_carries_status_and_detail(self):
        ex = status.ProbeException('HTTP 500')
        self.assertEqual(ex.status, status.Status.ProbeFailed)
        self.assertEqual(ex.detail, 'HTTP 500')
        self.assertIn('HTTP 500', str(ex))
        self.assertIn(status.get_message(status.Status.ProbeFailed), str(ex))

    def test_exception_without_detail_uses_status_message(self):
        ex = status.NotConfiguredException()
        self.assertEqual(str(ex), status.get_message(status.Status.NotConfigured))

    def test_exception_emits_error_signal(self):
        received = []

        def _slot(message: str) -> None:
            received.append(message)

        signals.error.connect(_slot)
        try:
            status.ExchangeException('disk full')
            status.CredsNotFoundException()
        finally:
            signals.error.disconnect(_slot)

        self.assertEqual(received, ['disk full', status.get_message(status.Status.CredsNotFound)])

    def test_not_authenticated_family(self):
        for cls in (
                status.CredsNotFoundException,
                status.CredsInvalidException,
                status.ClientSecretNotFoundException,
                status.TokenRefreshFailedException,
        ):
            self.assertTrue(issubclass(cls, status.NotAuthenticatedException), cls)

    def test_exchange_and_validation_families(self):
        self.assertTrue(issubclass(status.ExchangeInProgressException, status.ExchangeException))
        self.assertTrue(issubclass(status.RemoteBackupNotFoundException, status.ExchangeException))
        self.assertTrue(issubclass(status.ClientSecretInvalidException, status.ValidationException))
        self.assertTrue(issubclass(status.SyncConfigInvalidException, status.ValidationException))
        self.assertFalse(issubclass(status.ProbeException, status.ExchangeException))
