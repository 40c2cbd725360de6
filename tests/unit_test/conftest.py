import pytest

from kubeloop.controller.manager import ControllerManager
from kubeloop.db.models import KubeObject
from kubeloop.service.object_service import ObjectService
from kubeloop.sim.node_agent import NodeAgentSimulator
from kubeloop.store.object_store import ObjectStore
from kubeloop.utils.clock import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return ObjectStore(clock=clock)


@pytest.fixture
def make_object():
    def make(kind="Pod", name="obj", namespace="default", spec=None, labels=None, **kwargs):
        return KubeObject(kind=kind, namespace=namespace, name=name, spec=spec or {}, labels=labels or {}, **kwargs)

    return make


@pytest.fixture
def cluster(clock, store):
    """A synchronous cluster whose node agent starts bound pods immediately"""
    agent = NodeAgentSimulator(store)
    manager = ControllerManager(store=store, clock=clock, node_agent=agent, worker_count=1)
    yield manager
    manager.executor.shutdown()


@pytest.fixture
def service(cluster):
    return ObjectService(cluster)


@pytest.fixture
def pod_template():
    def make(app="web", image="web:1", **pod_spec):
        return {
            "selector": {"matchLabels": {"app": app}},
            "template": {"labels": {"app": app}, "spec": {"image": image, **pod_spec}},
        }

    return make


@pytest.fixture
def add_nodes(service):
    def add(*names, labels=None, **spec):
        for name in names:
            service.submit("Node", None, name, dict(spec), labels=dict(labels or {}))

    return add
