import pytest
from fakes import FakeRouter

from color_resolver import ColorResolver
from kube_types import Service, Slot
from rollout_errors import RouterUnreachable

pytestmark = pytest.mark.anyio

SERVICE = Service(name="fraudrisk-service", namespace="fraud-risk")


async def test_resolves_live_color():
    router = FakeRouter({SERVICE.key: Slot.GREEN})
    assert await ColorResolver(router).resolve_active(SERVICE) is Slot.GREEN
    assert router.writes == []


async def test_unset_selector_is_none():
    assert await ColorResolver(FakeRouter()).resolve_active(SERVICE) is None


async def test_router_failure_is_an_error_not_a_default():
    router = FakeRouter({SERVICE.key: Slot.BLUE})
    router.fail_get = True

    with pytest.raises(RouterUnreachable) as excinfo:
        await ColorResolver(router).resolve_active(SERVICE)
    assert excinfo.value.service == SERVICE.name
    assert isinstance(excinfo.value.__cause__, ConnectionError)
