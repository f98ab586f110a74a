import random
import threading

import pytest

from ddr import events as ev
from ddr.errors import InvariantViolation, NoMatchingVolume
from ddr.models import AccessMode, Claim, ClaimState, ReclaimPolicy, Volume, VolumeState, parse_quantity
from ddr.volumes import VolumeBinder

GI = 1024**3
RWO = AccessMode.READ_WRITE_ONCE
RWX = AccessMode.READ_WRITE_MANY


def _declare(store, *volumes, claims=()):
    for i, v in enumerate(volumes, start=1):
        v.order = i
        store.volumes[v.name] = v
    for c in claims:
        store.claims[c.name] = c


def test_parse_quantity():
    assert parse_quantity("5Gi") == 5 * GI
    assert parse_quantity("500Mi") == 500 * 1024**2
    assert parse_quantity("1G") == 1_000_000_000
    assert parse_quantity("1k") == 1000
    assert parse_quantity(42) == 42
    with pytest.raises(ValueError):
        parse_quantity("five gigs")


def test_binds_smallest_volume_that_fits(store, events):
    _declare(
        store,
        Volume("big", 20 * GI, RWO, labels={"type": "local"}),
        Volume("small", 5 * GI, RWO, labels={"type": "local"}),
        claims=[Claim("mysql-pv-claim", 5 * GI, RWO, selector={"type": "local"})],
    )
    binder = VolumeBinder(store, events)

    vol = binder.bind("mysql-pv-claim")

    assert vol.name == "small"
    assert store.volumes["small"].state == VolumeState.BOUND
    assert store.volumes["small"].claim == "mysql-pv-claim"
    assert store.claims["mysql-pv-claim"].state == ClaimState.BOUND
    assert store.claims["mysql-pv-claim"].volume == "small"
    assert store.volumes["big"].state == VolumeState.UNBOUND
    assert events.kinds() == [ev.BINDING_SUCCEEDED]


def test_ties_go_to_first_declared(store, events):
    _declare(
        store,
        Volume("a", 10 * GI, RWO),
        Volume("b", 10 * GI, RWO),
        claims=[Claim("c", 1 * GI, RWO)],
    )
    assert VolumeBinder(store, events).bind("c").name == "a"


def test_access_mode_and_selector_must_match(store, events):
    _declare(
        store,
        Volume("shared", 50 * GI, RWX, labels={"type": "local"}),
        Volume("ssd", 50 * GI, RWO, labels={"type": "ssd"}),
        Volume("tiny", 1 * GI, RWO, labels={"type": "local"}),
        claims=[Claim("c", 5 * GI, RWO, selector={"type": "local"})],
    )
    binder = VolumeBinder(store, events)

    with pytest.raises(NoMatchingVolume):
        binder.bind("c")
    assert store.claims["c"].state == ClaimState.PENDING
    assert all(v.state == VolumeState.UNBOUND for v in store.volumes.values())


def test_volume_labels_may_be_a_superset_of_selector(store, events):
    _declare(
        store,
        Volume("v", 5 * GI, RWO, labels={"type": "local", "zone": "a"}),
        claims=[Claim("c", 5 * GI, RWO, selector={"type": "local"})],
    )
    assert VolumeBinder(store, events).bind("c").name == "v"


def test_bind_is_idempotent(store, events):
    _declare(store, Volume("v1", 5 * GI, RWO), Volume("v2", 5 * GI, RWO), claims=[Claim("c", 5 * GI, RWO)])
    binder = VolumeBinder(store, events)

    first = binder.bind("c")
    again = binder.bind("c")

    assert first.name == again.name == "v1"
    assert store.volumes["v2"].state == VolumeState.UNBOUND
    assert events.kinds().count(ev.BINDING_SUCCEEDED) == 1


def test_retained_volume_is_released_not_reused(store, events):
    _declare(
        store,
        Volume("v", 5 * GI, RWO, reclaim_policy=ReclaimPolicy.RETAIN),
        claims=[Claim("old", 5 * GI, RWO)],
    )
    binder = VolumeBinder(store, events)
    binder.bind("old")

    vol = binder.release("old")

    assert vol.state == VolumeState.RELEASED
    assert vol.claim is None
    assert "old" not in store.claims
    store.claims["new"] = Claim("new", 5 * GI, RWO)
    with pytest.raises(NoMatchingVolume):
        binder.bind("new")


def test_delete_policy_volume_becomes_available_again(store, events):
    _declare(
        store,
        Volume("v", 5 * GI, RWO, reclaim_policy=ReclaimPolicy.DELETE),
        claims=[Claim("old", 5 * GI, RWO)],
    )
    binder = VolumeBinder(store, events)
    binder.bind("old")
    binder.release("old")

    store.claims["new"] = Claim("new", 5 * GI, RWO)
    assert binder.bind("new").name == "v"


def test_detects_double_binding(store, events):
    _declare(store, Volume("v", 5 * GI, RWO), claims=[Claim("a", 5 * GI, RWO), Claim("b", 5 * GI, RWO)])
    binder = VolumeBinder(store, events)
    binder.bind("a")
    store.claims["b"].state = ClaimState.BOUND
    store.claims["b"].volume = "v"

    with pytest.raises(InvariantViolation):
        binder.check_invariants()


def test_concurrent_binds_never_share_a_volume(store, events):
    _declare(
        store,
        *[Volume(f"v{i}", (i % 3 + 1) * GI, RWO) for i in range(10)],
        claims=[Claim(f"c{i}", 1 * GI, RWO) for i in range(25)],
    )
    binder = VolumeBinder(store, events)
    barrier = threading.Barrier(25)
    bound: list[str] = []
    failed: list[str] = []
    lock = threading.Lock()

    def attempt(name: str) -> None:
        barrier.wait()
        try:
            vol = binder.bind(name)
        except NoMatchingVolume:
            with lock:
                failed.append(name)
            return
        with lock:
            bound.append(vol.name)

    threads = [threading.Thread(target=attempt, args=(f"c{i}",)) for i in range(25)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(bound) == 10
    assert len(set(bound)) == 10
    assert len(failed) == 15
    binder.check_invariants()


@pytest.mark.parametrize("seed", range(20))
def test_bound_claims_always_fit(seed, store, events):
    rnd = random.Random(seed)
    modes = [RWO, RWX, AccessMode.READ_ONLY_MANY]
    volumes = [
        Volume(f"v{i}", rnd.randint(1, 20) * GI, rnd.choice(modes), labels={"tier": rnd.choice(["db", "web"])})
        for i in range(rnd.randint(1, 12))
    ]
    claims = [
        Claim(f"c{i}", rnd.randint(1, 20) * GI, rnd.choice(modes), selector=rnd.choice([{}, {"tier": "db"}]))
        for i in range(rnd.randint(1, 12))
    ]
    _declare(store, *volumes, claims=claims)
    binder = VolumeBinder(store, events)

    for c in claims:
        try:
            binder.bind(c.name)
        except NoMatchingVolume:
            pass

    owners = [c.volume for c in store.claims.values() if c.state == ClaimState.BOUND]
    assert len(owners) == len(set(owners))
    for c in store.claims.values():
        if c.state != ClaimState.BOUND:
            continue
        vol = store.volumes[c.volume]
        assert vol.capacity >= c.capacity
        assert vol.access_mode == c.access_mode
        assert vol.claim == c.name
    binder.check_invariants()
