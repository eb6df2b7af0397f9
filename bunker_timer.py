import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import numpy as np

from blend_engine import CoalLookup, flow_weighted_summary
from coal_properties import NUM_MILLS, Bunker, BunkerLayer, Coal, calc_aft, to_number

logger = logging.getLogger(__name__)

Event = Dict[str, Any]
Listener = Callable[[Event], None]


def layer_duration(layer: BunkerLayer, flow_tph: float, capacity_t: float) -> Optional[float]:
    """
    Seconds for a layer to drain.

    An operator-entered timer wins. Otherwise the layer's share of the bunker
    capacity is drained at the mill flow. None means the layer never drains
    (mill not running).
    """
    if layer.timer and layer.timer > 0:
        return float(layer.timer)
    if flow_tph > 0 and layer.percent > 0:
        tonnes = layer.percent / 100.0 * capacity_t
        return tonnes / flow_tph * 3600.0
    return None


@dataclass
class BunkerState:
    index: int
    flow: float
    layers: List[BunkerLayer] = field(default_factory=list)  # bottom -> top
    durations: List[Optional[float]] = field(default_factory=list)
    active: Optional[int] = None
    remaining: Optional[float] = None

    @property
    def active_layer(self) -> Optional[BunkerLayer]:
        return self.layers[self.active] if self.active is not None else None

    def snapshot(self) -> Dict[str, Any]:
        layer = self.active_layer
        return {
            "bunker": self.index,
            "flow": self.flow,
            "activeIndex": self.active,
            "activeLayer": asdict(layer) if layer else None,
            "remaining": self.remaining,
            "layerCount": len(self.layers),
            "empty": self.active is None,
        }


class NextBlendBinder:
    """
    Simulates which coal layer each bunker is currently feeding its mill.

    Bind a stored blend, then call tick() once per second. The bottom layer of
    each bunker drains first; when its countdown reaches zero the pointer moves
    one layer up and listeners are told, so the unit metrics can be re-derived
    from the coals now being fired.
    """

    def __init__(self, capacity_t: float = 500.0):
        self.capacity_t = capacity_t
        self.blend_id: Optional[Any] = None
        self.generation: Optional[float] = None
        self.bunkers: List[BunkerState] = []
        self.elapsed = 0.0
        self.lookup = CoalLookup([])
        self.listeners: List[Listener] = []

    def bind(self, blend: Optional[Dict[str, Any]], coals: Optional[List[Coal]] = None):
        """Load a blend document and reset every bunker to its bottom layer."""
        self.lookup = CoalLookup(coals or [])
        self.elapsed = 0.0
        self.bunkers = []
        if not blend:
            self.blend_id = None
            self.generation = None
            return

        self.blend_id = blend.get("_id")
        self.generation = blend.get("generation")
        flows = blend.get("flows") or []
        raw_bunkers = blend.get("bunkers") or []

        for m in range(NUM_MILLS):
            flow = to_number(flows[m]) if m < len(flows) else 0.0
            bunker = Bunker.from_dict(raw_bunkers[m]) if m < len(raw_bunkers) else Bunker()
            # Stored in row order, which is top of the silo first
            layers = [l for l in reversed(bunker.layers) if l.percent > 0]
            durations = [layer_duration(l, flow, self.capacity_t) for l in layers]
            state = BunkerState(index=m, flow=flow, layers=layers, durations=durations)
            if layers:
                state.active = 0
                state.remaining = durations[0]
            self.bunkers.append(state)

        logger.info("Bound blend %s: %d layers across %d bunkers",
                    self.blend_id, sum(len(b.layers) for b in self.bunkers), len(self.bunkers))

    def subscribe(self, listener: Listener):
        self.listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def _dispatch(self, event: Event):
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed on %s event", event.get("type"))

    def _advance(self, state: BunkerState) -> Event:
        finished = state.active_layer
        state.active += 1
        if state.active >= len(state.layers):
            state.active = None
            state.remaining = None
            return {"type": "bunker_empty", "bunker": state.index,
                    "finishedLayer": asdict(finished), "elapsed": self.elapsed}

        duration = state.durations[state.active]
        # Carry the overshoot into the next layer
        state.remaining = None if duration is None else state.remaining + duration
        return {"type": "layer_advanced", "bunker": state.index,
                "finishedLayer": asdict(finished), "activeIndex": state.active,
                "activeLayer": asdict(state.active_layer), "elapsed": self.elapsed}

    def tick(self, seconds: float = 1.0) -> List[Event]:
        """Advance the simulation clock. Returns the events dispatched, `tick` last."""
        self.elapsed += seconds
        events: List[Event] = []

        for state in self.bunkers:
            if state.active is None or state.remaining is None:
                continue
            state.remaining -= seconds
            while state.remaining is not None and state.remaining <= 0:
                events.append(self._advance(state))
                if state.active is None:
                    break

        if events:
            events.append({"type": "metrics", "metrics": self.metrics(), "elapsed": self.elapsed})
        events.append({"type": "tick", **self.state()})

        for event in events:
            self._dispatch(event)
        return events

    def metrics(self) -> Dict[str, Optional[float]]:
        """Unit summary recomputed from the active layer of every bunker."""
        flows = np.zeros(NUM_MILLS)
        gcv = np.zeros(NUM_MILLS)
        cost = np.zeros(NUM_MILLS)
        aft: List[Optional[float]] = [None] * NUM_MILLS

        for state in self.bunkers:
            layer = state.active_layer
            if layer is None:
                continue
            m = state.index
            flows[m] = state.flow
            gcv[m] = layer.gcv
            cost[m] = layer.cost
            coal = self.lookup.find(layer.coal)
            if coal and sum(coal.oxides.values()) > 0:
                aft[m] = calc_aft(coal.oxides)

        summary = flow_weighted_summary(flows, gcv, aft, self.generation)
        total_flow = summary["totalFlow"]
        summary["costRate"] = float((flows * cost).sum() / total_flow) if total_flow > 0 else 0.0
        summary["generation"] = self.generation
        return summary

    def state(self) -> Dict[str, Any]:
        return {
            "blendId": self.blend_id,
            "elapsed": self.elapsed,
            "bunkers": [b.snapshot() for b in self.bunkers],
            "metrics": self.metrics(),
        }

    async def run(self, interval: float = 1.0, on_events: Optional[Callable[[List[Event]], Awaitable[None]]] = None):
        """Tick forever. `on_events` is awaited with each tick's events."""
        while True:
            await asyncio.sleep(interval)
            try:
                events = self.tick(interval)
                if on_events:
                    await on_events(events)
            except Exception:
                logger.exception("Bunker tick failed at %.1fs", self.elapsed)
