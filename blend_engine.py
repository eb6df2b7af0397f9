import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np

from coal_properties import NUM_MILLS, OXIDE_KEYS, Bunker, BunkerLayer, Coal, calc_aft, to_number

logger = logging.getLogger(__name__)

CoalRef = Union[str, Dict[str, str], None]


class CoalLookup:
    """
    Resolves coal references from operator rows against the catalog.
    A reference is either a catalog id or a coal name (case-insensitive).
    """

    def __init__(self, coals: List[Coal]):
        self.by_id: Dict[str, Coal] = {}
        self.by_name: Dict[str, Coal] = {}
        for c in coals:
            if c.id is not None:
                self.by_id[str(c.id)] = c
            if c.coal:
                self.by_name[c.coal.lower()] = c

    def find(self, ref: Any) -> Optional[Coal]:
        if ref is None or ref == "" or isinstance(ref, dict):
            return None
        ref = str(ref)
        return self.by_id.get(ref) or self.by_name.get(ref.lower())

    def canonical_name(self, ref: Any) -> str:
        coal = self.find(ref)
        if coal:
            return coal.coal
        return str(ref) if ref else ""


def coal_ref_for_mill(row: Dict[str, Any], mill: int) -> str:
    """A row names one coal for every bunker, or a {mill index: ref} mapping."""
    ref = row.get("coal")
    if isinstance(ref, dict):
        return ref.get(str(mill)) or ""
    return ref or ""


def resolve_row(row: Dict[str, Any], lookup: CoalLookup) -> Dict[str, Any]:
    """Sanitised copy of an operator row with coal references replaced by catalog names."""
    copy = dict(row or {})
    ref = copy.get("coal")
    if isinstance(ref, dict):
        copy["coal"] = {str(k): lookup.canonical_name(v) for k, v in ref.items()}
    elif ref:
        copy["coal"] = lookup.canonical_name(ref)
    else:
        copy["coal"] = ""

    percentages = copy.get("percentages")
    if isinstance(percentages, list):
        copy["percentages"] = [to_number(v) for v in percentages]
    else:
        copy["percentages"] = [0.0] * NUM_MILLS
    copy["gcv"] = to_number(copy.get("gcv"))
    copy["cost"] = to_number(copy.get("cost"))
    return copy


@dataclass
class BlendMetrics:
    totalFlow: float = 0.0
    avgGCV: float = 0.0
    avgAFT: Optional[float] = None
    heatRate: Optional[float] = None
    costRate: float = 0.0
    aftPerMill: List[Optional[float]] = field(default_factory=list)
    blendedGCVPerMill: List[float] = field(default_factory=list)
    bunkers: List[Bunker] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalFlow": self.totalFlow,
            "avgGCV": self.avgGCV,
            "avgAFT": self.avgAFT,
            "heatRate": self.heatRate,
            "costRate": self.costRate,
            "aftPerMill": list(self.aftPerMill),
            "blendedGCVPerMill": list(self.blendedGCVPerMill),
            "bunkers": [b.to_dict() for b in self.bunkers],
        }


def _pad(values: Optional[List[Any]], size: int = NUM_MILLS) -> np.ndarray:
    arr = np.zeros(size)
    for i, v in enumerate((values or [])[:size]):
        arr[i] = to_number(v)
    return arr


def flow_weighted_summary(
    flows: np.ndarray,
    gcv_per_mill: np.ndarray,
    aft_per_mill: List[Optional[float]],
    generation: Optional[float],
) -> Dict[str, Optional[float]]:
    """
    Unit-level averages from per-mill values.

    AFT is averaged only over mills that have one; heat rate needs both
    a positive generation and some flow.
    """
    total_flow = float(flows.sum())
    avg_gcv = float((flows * gcv_per_mill).sum() / total_flow) if total_flow > 0 else 0.0

    aft_mask = np.array([a is not None for a in aft_per_mill], dtype=bool)
    aft_vals = np.array([a if a is not None else 0.0 for a in aft_per_mill])
    aft_flow = float(flows[aft_mask].sum()) if aft_mask.any() else 0.0
    avg_aft = float((flows[aft_mask] * aft_vals[aft_mask]).sum() / aft_flow) if aft_flow > 0 else None

    generation = to_number(generation)
    heat_rate = (total_flow * avg_gcv) / generation if generation > 0 and total_flow > 0 else None

    return {"totalFlow": total_flow, "avgGCV": avg_gcv, "avgAFT": avg_aft, "heatRate": heat_rate}


def compute_blend_metrics(
    rows: List[Dict[str, Any]],
    flows: List[Any],
    generation: Optional[float],
    lookup: CoalLookup,
) -> BlendMetrics:
    """
    Computes per-mill blend chemistry and unit summaries for a set of coal rows.

    Each row gives the percentage of one coal in each of the six bunkers.
    Per-cell GCV and cost come from the row when entered (> 0), otherwise from
    the resolved catalog coal. Bunker layers take the other order: the catalog
    value when the coal resolves, else the row's. Oxides come from the catalog
    coal, falling back to oxide values carried on the row itself.
    """
    rows = rows or []
    n = len(rows)

    # rows x mills matrices
    pct = np.zeros((n, NUM_MILLS))
    gcv = np.zeros((n, NUM_MILLS))
    cost = np.zeros((n, NUM_MILLS))
    layer_gcv = np.zeros((n, NUM_MILLS))
    layer_cost = np.zeros((n, NUM_MILLS))
    ox = np.zeros((n, NUM_MILLS, len(OXIDE_KEYS)))

    for i, row in enumerate(rows):
        row = row or {}
        pct[i] = _pad(row.get("percentages"))
        row_gcv = to_number(row.get("gcv"))
        row_cost = to_number(row.get("cost"))
        row_ox = [to_number(row.get(k)) for k in OXIDE_KEYS]

        for m in range(NUM_MILLS):
            coal = lookup.find(coal_ref_for_mill(row, m))
            gcv[i, m] = row_gcv if row_gcv > 0 else (coal.gcv if coal else 0.0)
            cost[i, m] = row_cost if row_cost > 0 else (coal.cost if coal else 0.0)
            layer_gcv[i, m] = coal.gcv if coal and coal.gcv > 0 else row_gcv
            layer_cost[i, m] = coal.cost if coal and coal.cost > 0 else row_cost
            ox[i, m] = [coal.oxides[k] for k in OXIDE_KEYS] if coal else row_ox

    weights = pct / 100.0
    blended_gcv = (gcv * weights).sum(axis=0)
    blended_ox = (ox * weights[:, :, None]).sum(axis=0)

    aft_per_mill: List[Optional[float]] = []
    for m in range(NUM_MILLS):
        if blended_ox[m].sum() == 0:
            aft_per_mill.append(None)
        else:
            aft_per_mill.append(calc_aft(dict(zip(OXIDE_KEYS, blended_ox[m].tolist()))))

    summary = flow_weighted_summary(_pad(flows), blended_gcv, aft_per_mill, generation)

    total_qty = float(pct.sum())
    cost_rate = float((pct * cost).sum() / total_qty) if total_qty > 0 else 0.0

    bunkers = []
    for m in range(NUM_MILLS):
        layers = []
        for i, row in enumerate(rows):
            if pct[i, m] <= 0:
                continue
            ref = coal_ref_for_mill(row or {}, m)
            timers = (row or {}).get("timers") or []
            timer = to_number(timers[m]) if m < len(timers) and timers[m] is not None else None
            layers.append(BunkerLayer(
                rowIndex=i + 1,
                coal=lookup.canonical_name(ref),
                percent=float(pct[i, m]),
                gcv=float(layer_gcv[i, m]),
                cost=float(layer_cost[i, m]),
                timer=timer if timer else None,
            ))
        bunkers.append(Bunker(layers=layers))

    logger.debug("Blend over %d rows: total flow %.2f t/h, avg GCV %.1f", n, summary["totalFlow"], summary["avgGCV"])

    return BlendMetrics(
        totalFlow=summary["totalFlow"],
        avgGCV=summary["avgGCV"],
        avgAFT=summary["avgAFT"],
        heatRate=summary["heatRate"],
        costRate=cost_rate,
        aftPerMill=aft_per_mill,
        blendedGCVPerMill=[float(v) for v in blended_gcv],
        bunkers=bunkers,
    )
