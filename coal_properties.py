import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

NUM_MILLS = 6

# Ash oxides entering the fusion temperature correlation
OXIDE_KEYS = ["SiO2", "Al2O3", "Fe2O3", "CaO", "MgO", "Na2O", "K2O", "SO3", "TiO2"]

# Everything a catalog entry carries besides name, gcv, cost and color
CATALOG_FIELDS = ["SiO2", "Al2O3", "Fe2O3", "CaO", "MgO", "Na2O", "K2O", "TiO2", "SO3", "P2O5", "Mn3O4", "SulphurS"]

DEFAULT_COAL_COLORS = ["#f39c12", "#3498db", "#2ecc71", "#ef4444", "#8b5cf6", "#14b8a6", "#f97316", "#06b6d4"]

# Upload column aliases -> canonical field
COLUMN_ALIASES = {
    "coal": ["Coal", "coal", "Name"],
    "SiO2": ["SiO2", "SiO₂"],
    "Al2O3": ["Al2O3", "Al₂O₃"],
    "Fe2O3": ["Fe2O3", "Fe₂O₃"],
    "CaO": ["CaO"],
    "MgO": ["MgO"],
    "Na2O": ["Na2O"],
    "K2O": ["K2O"],
    "TiO2": ["TiO2"],
    "SO3": ["SO3"],
    "P2O5": ["P2O5"],
    "Mn3O4": ["Mn3O4", "MN3O4"],
    "SulphurS": ["Sulphur", "SulphurS"],
    "gcv": ["GCV", "gcv"],
    "cost": ["Cost", "cost"],
    "color": ["Color", "color", "colour", "hex"],
}


def to_number(val: Any, default: float = 0.0) -> float:
    """Coerce a form or catalog value to float; blanks and garbage become `default`."""
    if val is None or isinstance(val, bool):
        return default
    if isinstance(val, str):
        val = val.strip()
        if not val:
            return default
    try:
        num = float(val)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(num):  # NaN, inf, 1e999
        return default
    return num


@dataclass
class Coal:
    """
    A catalog coal: ash chemistry (% of ash), calorific value and price.
    """
    coal: str
    SiO2: float = 0.0
    Al2O3: float = 0.0
    Fe2O3: float = 0.0
    CaO: float = 0.0
    MgO: float = 0.0
    Na2O: float = 0.0
    K2O: float = 0.0
    TiO2: float = 0.0
    SO3: float = 0.0
    P2O5: float = 0.0
    Mn3O4: float = 0.0
    SulphurS: float = 0.0
    gcv: float = 0.0       # kcal/kg
    cost: float = 0.0      # Currency per tonne
    color: str = ""
    id: Optional[int] = None

    @property
    def oxides(self) -> Dict[str, float]:
        return {k: getattr(self, k) for k in OXIDE_KEYS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Coal":
        values = {k: to_number(data.get(k)) for k in CATALOG_FIELDS + ["gcv", "cost"]}
        return cls(
            coal=str(data.get("coal") or ""),
            color=str(data.get("color") or ""),
            id=data.get("_id", data.get("id")),
            **values,
        )

    def to_dict(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc["_id"] = doc.pop("id")
        return doc


@dataclass
class BunkerLayer:
    """One row's share of a bunker. Percent is of bunker volume."""
    rowIndex: int
    coal: str
    percent: float
    gcv: float = 0.0
    cost: float = 0.0
    timer: Optional[float] = None  # Seconds to drain, when supplied by the operator


@dataclass
class Bunker:
    layers: List[BunkerLayer] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bunker":
        layers = []
        for raw in (data or {}).get("layers") or []:
            timer = raw.get("timer")
            layers.append(BunkerLayer(
                rowIndex=int(to_number(raw.get("rowIndex"))),
                coal=str(raw.get("coal") or ""),
                percent=to_number(raw.get("percent")),
                gcv=to_number(raw.get("gcv")),
                cost=to_number(raw.get("cost")),
                timer=to_number(timer) if timer is not None else None,
            ))
        return cls(layers=layers)

    def to_dict(self) -> Dict[str, Any]:
        return {"layers": [asdict(layer) for layer in self.layers]}


def calc_aft(ox: Dict[str, Any]) -> float:
    """
    Ash fusion temperature (deg C) from the blended ash oxides.

    The correlation switches on the acid fraction SiO2 + Al2O3:
    below 55, 55 to 75, and 75 upward.
    """
    total = sum(to_number(v) for v in (ox or {}).values())
    if total == 0:
        return 0.0
    SiO2, Al2O3, Fe2O3, CaO, MgO, Na2O, K2O, SO3, TiO2 = (to_number((ox or {}).get(k)) for k in OXIDE_KEYS)

    acid = SiO2 + Al2O3
    if acid < 55:
        aft = (1245 + 1.1 * SiO2 + 0.95 * Al2O3 - 2.5 * Fe2O3 - 2.98 * CaO - 4.5 * MgO
               - 7.89 * (Na2O + K2O) - 1.7 * SO3 - 0.63 * TiO2)
    elif acid < 75:
        aft = (1323 + 1.45 * SiO2 + 0.683 * Al2O3 - 2.39 * Fe2O3 - 3.1 * CaO - 4.5 * MgO
               - 7.49 * (Na2O + K2O) - 2.1 * SO3 - 0.63 * TiO2)
    else:
        aft = (1395 + 1.2 * SiO2 + 0.9 * Al2O3 - 2.5 * Fe2O3 - 3.1 * CaO - 4.5 * MgO
               - 7.2 * (Na2O + K2O) - 1.7 * SO3 - 0.63 * TiO2)
    return float(aft)


def normalise_coal_record(item: Dict[str, Any]) -> Dict[str, Any]:
    """Map an uploaded catalog record onto canonical coal fields."""
    record: Dict[str, Any] = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        raw = next((item[a] for a in aliases if item.get(a) not in (None, "")), None)
        if canonical in ("coal", "color"):
            record[canonical] = str(raw).strip() if raw is not None else ""
        else:
            record[canonical] = to_number(raw)
    return record
