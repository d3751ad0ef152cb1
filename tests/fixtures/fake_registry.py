"""
In-memory registry adapter for service tests.

Behaves like a registry that never loses data: it records every call so
tests can assert how many external accounts were created or deleted.
"""

import itertools
import threading
import time
from unittest.mock import Mock

from pull_secret_core.config import AdapterHttpConfig
from pull_secret_core.exceptions import AdapterRejectedError, not_found
from pull_secret_core.registries.base import RegistryAdapter
from pull_secret_core.schemas.credential_schemas import ExternalAccount


class FakeRegistryAdapter(RegistryAdapter):
    """Registry adapter double keeping accounts in a dict."""

    def __init__(self, registry, supports_relabel=False, supports_recover=False, create_delay=0.0):
        super().__init__(registry, AdapterHttpConfig(retry_backoff_base=0), session=Mock())
        self.supports_relabel = supports_relabel
        self.supports_recover = supports_recover
        self.create_delay = create_delay

        self.accounts = {}
        self.created = []
        self.deleted = []
        self.recovered = []
        self.relabeled = []

        # Exceptions raised, in order, by the next calls before succeeding again
        self.create_errors = []
        self.delete_errors = []
        self.relabel_errors = []

        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _build_session(self):
        return Mock()

    def create_account(self, owner):
        with self._lock:
            if self.create_errors:
                raise self.create_errors.pop(0)
            number = next(self._counter)

        if self.create_delay:
            time.sleep(self.create_delay)

        name = f"{self.registry.id}+account_{number}"
        secret = f"secret-{self.registry.id}-{number}"
        with self._lock:
            self.accounts[name] = {"secret": secret, "deleted": False, "owner": owner.cluster_id}
            self.created.append(name)
        return ExternalAccount(external_name=name, secret=secret)

    def delete_account(self, external_name):
        with self._lock:
            if self.delete_errors:
                raise self.delete_errors.pop(0)
            account = self.accounts.get(external_name)
            if account is None or account["deleted"]:
                raise not_found("ExternalAccount", external_name=external_name)
            if self.supports_recover:
                account["deleted"] = True
            else:
                del self.accounts[external_name]
            self.deleted.append(external_name)

    def recover_account(self, external_name):
        if not self.supports_recover:
            raise AdapterRejectedError("recovery unsupported", service_name=self.service_name)
        with self._lock:
            account = self.accounts.get(external_name)
            if account is None:
                raise not_found("ExternalAccount", external_name=external_name)
            account["deleted"] = False
            self.recovered.append(external_name)
            return ExternalAccount(external_name=external_name, secret=account["secret"])

    def relabel_account(self, external_name, owner):
        with self._lock:
            if self.relabel_errors:
                raise self.relabel_errors.pop(0)
            if external_name not in self.accounts:
                raise not_found("ExternalAccount", external_name=external_name)
            self.accounts[external_name]["owner"] = owner.cluster_id
            self.relabeled.append((external_name, owner.cluster_id))

    @property
    def live_accounts(self):
        return [name for name, account in self.accounts.items() if not account["deleted"]]
