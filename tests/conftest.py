from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from endpoint_provisioner.config import ProvisionerSettings
from endpoint_provisioner.errors import ProviderError
from endpoint_provisioner.provider.aws import AwsProvider
from endpoint_provisioner.state.store import StateStore


class FakeStep:
    """In-memory step that records every call made to it."""

    def __init__(self, name, produces=None, depends_on=(), present=False, fail_on=None, calls=None):
        self.name = name
        self.produces = frozenset(produces if produces is not None else [name])
        self.depends_on = frozenset(depends_on)
        self.present = present
        self.fail_on = fail_on or set()
        self.calls = calls if calls is not None else []
        self.adopted = {}

    def _maybe_fail(self, action):
        self.calls.append((action, self.name))
        if action in self.fail_on:
            raise ProviderError(f"{self.name}:{action}", "rejected", code="InvalidParameter")

    def exists(self, state):
        self._maybe_fail("exists")
        return self.present

    def adopt(self, state):
        return dict(self.adopted)

    def create(self, state):
        self._maybe_fail("create")
        for role in self.depends_on:
            state.get(role)
        self.present = True
        return {role: f"id-{role}" for role in sorted(self.produces)}

    def delete(self, state):
        self._maybe_fail("delete")
        self.present = False


def make_client_error(code, operation="Operation", message="request rejected"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@pytest.fixture
def fake_step():
    return FakeStep


@pytest.fixture
def client_error():
    return make_client_error


@pytest.fixture
def settings(tmp_path):
    return ProvisionerSettings(
        project_id="s3-vpc-endpoint-test",
        region="us-west-2",
        state_path=str(tmp_path / "configs" / "vpc-parameters.json"),
        report_dir=str(tmp_path / "outputs"),
        key_dir=str(tmp_path / "keys"),
        endpoint_wait_timeout=1,
        poll_interval=0,
        iam_propagation_seconds=0,
    )


@pytest.fixture
def clients():
    return {service: MagicMock(name=service) for service in ("ec2", "s3", "iam", "sts")}


@pytest.fixture
def provider(settings, clients):
    session = MagicMock()
    session.client.side_effect = lambda service, **kwargs: clients[service]
    return AwsProvider(settings, session=session)


@pytest.fixture
def state(settings):
    store = StateStore(settings.state_path)
    store.load()
    return store
