from __future__ import annotations

from . import events as ev
from .errors import InvariantViolation, NoMatchingVolume, SpecConflictError
from .events import EventSink
from .models import Claim, ClaimState, ReclaimPolicy, Volume, VolumeState
from .store import ResourceStore


def _matches(volume: Volume, claim: Claim) -> bool:
    if volume.state != VolumeState.UNBOUND:
        return False
    if volume.access_mode != claim.access_mode:
        return False
    if volume.capacity < claim.capacity:
        return False
    return all(volume.labels.get(k) == v for k, v in claim.selector.items())


class VolumeBinder:
    """Pairs storage claims with volumes.

    The binder is the only component that changes binding state. Binding
    picks the smallest volume that satisfies the claim (ties go to the volume
    declared first) and flips both sides while holding the store lock.
    """

    def __init__(self, store: ResourceStore, events: EventSink):
        self.store = store
        self.events = events

    def bind(self, claim_name: str) -> Volume:
        with self.store.lock:
            claim = self.store.claims.get(claim_name)
            if claim is None:
                raise SpecConflictError(f"Claim '{claim_name}' is not declared.")

            if claim.state == ClaimState.BOUND:
                vol = self.store.volumes.get(claim.volume or "")
                if vol is None or vol.claim != claim.name or vol.state != VolumeState.BOUND:
                    raise InvariantViolation(
                        f"Claim '{claim.name}' is bound to '{claim.volume}', which does not point back to it."
                    )
                return vol

            candidates = [v for v in self.store.volumes.values() if _matches(v, claim)]
            if not candidates:
                raise NoMatchingVolume(
                    f"No unbound {claim.access_mode.value} volume with capacity >= {claim.capacity} "
                    f"matches selector {claim.selector or '{}'} for claim '{claim.name}'."
                )
            vol = min(candidates, key=lambda v: (v.capacity, v.order))

            holders = [c.name for c in self.store.claims.values() if c.volume == vol.name and c.name != claim.name]
            if holders or vol.claim is not None:
                raise InvariantViolation(f"Volume '{vol.name}' is unbound but referenced by {holders or vol.claim}.")

            vol.state = VolumeState.BOUND
            vol.claim = claim.name
            claim.state = ClaimState.BOUND
            claim.volume = vol.name

        self.events.emit(
            ev.BINDING_SUCCEEDED,
            f"Bound claim '{claim.name}' to volume '{vol.name}'",
            claim=claim.name,
            volume=vol.name,
            capacity=vol.capacity,
        )
        return vol

    def release(self, claim_name: str) -> Volume | None:
        """Forget a deleted claim and apply its volume's reclaim policy.

        Retained volumes become Released and are never handed out again.
        """
        with self.store.lock:
            claim = self.store.claims.pop(claim_name, None)
            if claim is None or claim.volume is None:
                return None
            vol = self.store.volumes.get(claim.volume)
            if vol is None or vol.claim != claim.name:
                raise InvariantViolation(f"Claim '{claim.name}' references volume '{claim.volume}' inconsistently.")
            vol.claim = None
            vol.state = VolumeState.RELEASED if vol.reclaim_policy == ReclaimPolicy.RETAIN else VolumeState.UNBOUND

        self.events.emit(
            ev.CLAIM_RELEASED,
            f"Claim '{claim_name}' deleted; volume '{vol.name}' is now {vol.state.value}",
            claim=claim_name,
            volume=vol.name,
            state=vol.state.value,
        )
        return vol

    def volume_for(self, claim_name: str) -> Volume | None:
        with self.store.lock:
            claim = self.store.claims.get(claim_name)
            if claim is None or claim.state != ClaimState.BOUND:
                return None
            return self.store.volumes.get(claim.volume or "")

    def check_invariants(self) -> None:
        with self.store.lock:
            seen: dict[str, str] = {}
            for claim in self.store.claims.values():
                if claim.state != ClaimState.BOUND:
                    continue
                if claim.volume in seen:
                    raise InvariantViolation(
                        f"Volume '{claim.volume}' is bound to both '{seen[claim.volume]}' and '{claim.name}'."
                    )
                seen[claim.volume or ""] = claim.name
                vol = self.store.volumes.get(claim.volume or "")
                if vol is None or vol.claim != claim.name or vol.state != VolumeState.BOUND:
                    raise InvariantViolation(f"Claim '{claim.name}' and volume '{claim.volume}' disagree on binding.")
            for vol in self.store.volumes.values():
                if vol.state == VolumeState.BOUND and seen.get(vol.name) != vol.claim:
                    raise InvariantViolation(f"Volume '{vol.name}' claims '{vol.claim}', which is not bound to it.")
