"""Tests for the preview port allocator."""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from provisionctl.config import AppConfig
from provisionctl.errors import PortAllocationError
from provisionctl.models import ReservationState
from provisionctl.ports import PortAllocator, slugify
from provisionctl.state import StateRegistry


@pytest.fixture
def ports(tmp_path: Path) -> PortAllocator:
    """Return an allocator persisting to a temporary registry."""
    registry = StateRegistry(tmp_path / "registry")
    return PortAllocator(base_port=5000, max_port=5009, registry=registry)


def test_allocate_assigns_sequential_ports(ports: PortAllocator) -> None:
    """Allocation hands out the lowest free ports in order."""
    first = ports.allocate("alpha")
    second = ports.allocate("beta")

    assert (first.port, second.port) == (5000, 5001)
    assert first.state is ReservationState.RESERVED
    assert ports.get_port("alpha") == 5000
    assert ports.get_port("missing") is None


def test_release_frees_port_for_reuse(ports: PortAllocator) -> None:
    """Releasing a port makes it available for future reservations."""
    ports.allocate("alpha")
    ports.allocate("beta")

    released = ports.release("alpha")

    assert released is not None
    assert released.state is ReservationState.RELEASED
    assert ports.next_available_port() == 5000
    assert ports.allocate("gamma").port == 5000


def test_release_is_idempotent(ports: PortAllocator) -> None:
    """Releasing an unknown or already released id is a no-op."""
    ports.allocate("alpha")

    assert ports.release("alpha") is not None
    assert ports.release("alpha") is None
    assert ports.release("never-reserved") is None


def test_duplicate_allocation_for_same_id_raises(ports: PortAllocator) -> None:
    """An installation can hold at most one port."""
    ports.allocate("alpha")
    with pytest.raises(PortAllocationError, match="already holds"):
        ports.allocate("alpha")


def test_reserve_specific_port_and_collision(ports: PortAllocator) -> None:
    """Explicit reservations succeed when free and fail when taken."""
    assert ports.reserve("alpha", 5005).port == 5005
    assert ports.allocate("beta").port == 5000

    with pytest.raises(PortAllocationError, match="already reserved"):
        ports.reserve("gamma", 5005)
    with pytest.raises(PortAllocationError, match="outside the pool"):
        ports.reserve("delta", 6000)


def test_blank_installation_id_rejected(ports: PortAllocator) -> None:
    """Blank installation ids are rejected."""
    with pytest.raises(PortAllocationError):
        ports.allocate("   ")


def test_lookup_and_release_ignore_surrounding_whitespace(ports: PortAllocator) -> None:
    """Ids are matched the way they were stored, without padding."""
    assert ports.allocate(" alpha ").installation_id == "alpha"

    assert ports.get_port("alpha ") == 5000
    released = ports.release(" alpha")

    assert released is not None
    assert ports.list_reservations() == []
    with pytest.raises(PortAllocationError):
        ports.release("  ")


def test_exhausted_pool_raises(tmp_path: Path) -> None:
    """Allocation fails once every port in the pool is taken."""
    allocator = PortAllocator(base_port=7000, max_port=7001)
    allocator.allocate("a")
    allocator.allocate("b")

    with pytest.raises(PortAllocationError, match="No preview ports available"):
        allocator.allocate("c")
    assert allocator.capacity == 2


def test_invalid_pool_bounds_raise() -> None:
    """Pools with inverted or out-of-range bounds are rejected."""
    with pytest.raises(PortAllocationError):
        PortAllocator(base_port=9000, max_port=8000)
    with pytest.raises(PortAllocationError):
        PortAllocator(base_port=0, max_port=10)


def test_reservations_survive_reload(tmp_path: Path) -> None:
    """Live reservations are persisted and reloaded; released ones are not."""
    registry = StateRegistry(tmp_path / "registry")
    first = PortAllocator(base_port=5000, max_port=5009, registry=registry)
    first.allocate("alpha")
    first.allocate("beta")
    first.release("alpha")

    second = PortAllocator(base_port=5000, max_port=5009, registry=registry)

    assert [(r.installation_id, r.port) for r in second.list_reservations()] == [("beta", 5001)]
    assert second.allocate("gamma").port == 5000


def test_persist_failure_rolls_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Write failures bubble up and leave no reservation behind."""
    registry = StateRegistry(tmp_path / "registry")
    ports = PortAllocator(base_port=5000, max_port=5009, registry=registry)

    def fail_write(self: StateRegistry, entries: list[dict[str, object]]) -> None:  # noqa: ARG001
        raise OSError("disk full")

    monkeypatch.setattr(StateRegistry, "write_ports", fail_write)

    with pytest.raises(OSError):
        ports.allocate("alpha")
    assert ports.get_port("alpha") is None
    assert ports.next_available_port() == 5000


def test_from_config_respects_persist_flag(app_config: AppConfig) -> None:
    """The allocator reads pool bounds from configuration."""
    allocator = PortAllocator.from_config(app_config)

    assert (allocator.base_port, allocator.max_port) == (8080, 8090)
    allocator.allocate("inst-1")
    assert (app_config.registry_dir / "ports.yml").exists()


@pytest.mark.parametrize("count", [1, 2, 10, 100])
def test_concurrent_allocations_are_distinct(count: int) -> None:
    """Concurrent allocations never hand out the same port twice."""
    allocator = PortAllocator(base_port=8000, max_port=9999)
    barrier = threading.Barrier(min(count, 16))

    def claim(index: int) -> int:
        if index < barrier.parties:
            barrier.wait(timeout=5)
        return allocator.allocate(f"inst-{index}").port

    with ThreadPoolExecutor(max_workers=16) as pool:
        assigned = list(pool.map(claim, range(count)))

    assert len(set(assigned)) == count
    assert all(8000 <= port <= 9999 for port in assigned)
    assert sorted(assigned) == list(range(8000, 8000 + count))


def test_preview_domain_is_deterministic(ports: PortAllocator) -> None:
    """Preview hostnames depend only on the requester and label."""
    first = ports.preview_domain("user-1", "My Blog!")
    second = ports.preview_domain("user-1", "My Blog!")
    other = ports.preview_domain("user-2", "My Blog!")

    assert first == second
    assert first != other
    assert first.endswith("-my-blog.preview.example.net")
    assert len(first.split("-", 1)[0]) == 8
    assert ports.preview_domain("user-1", "!!!").split(".", 1)[0].endswith("-site")


def test_slugify_strips_unsafe_characters() -> None:
    """Slugs keep lowercase alphanumerics joined by dashes."""
    assert slugify("  Hello, World  ") == "hello-world"
    assert slugify("---") == ""
