import argparse
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import config
from blend_store import BlendStore
from bunker_timer import NextBlendBinder
from coal_properties import DEFAULT_COAL_COLORS, Coal

logger = logging.getLogger(__name__)

RESET = "\033[0m"


def clear_screen():
    os.system('cls' if os.name == 'nt' else 'clear')


def normalize_key(coal_name_or_id: Any) -> str:
    if coal_name_or_id is None:
        return ""
    return str(coal_name_or_id).strip().lower()


class CoalColorMap:
    """
    Stable display colour per coal.

    A colour set on the catalog entry wins; otherwise the next palette colour
    nobody has yet, and once the palette is used up, round-robin.
    """

    def __init__(self, palette: Optional[List[str]] = None):
        self.palette = palette or DEFAULT_COAL_COLORS
        self.colors: Dict[str, str] = {}
        self._palette_index = 0

    def sync_from_catalog(self, coals: List[Coal]):
        for c in coals:
            key = normalize_key(c.coal)
            if key and c.color and key not in self.colors:
                self.colors[key] = c.color

    def color_for(self, coal_name_or_id: Any) -> Optional[str]:
        key = normalize_key(coal_name_or_id)
        if not key:
            return None
        if key in self.colors:
            return self.colors[key]

        used = set(self.colors.values())
        color = next((c for c in self.palette if c not in used), None)
        if color is None:
            color = self.palette[self._palette_index % len(self.palette)]
            self._palette_index += 1
        self.colors[key] = color
        return color


def ansi_fg(hex_color: Optional[str]) -> str:
    """24-bit foreground escape for '#rrggbb'; empty for anything else."""
    if not hex_color or not hex_color.startswith("#") or len(hex_color) != 7:
        return ""
    try:
        r, g, b = (int(hex_color[i:i + 2], 16) for i in (1, 3, 5))
    except ValueError:
        return ""
    return f"\033[38;2;{r};{g};{b}m"


def fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None:
        return "--"
    return f"{value:.{digits}f}"


def fmt_countdown(seconds: Optional[float]) -> str:
    if seconds is None:
        return "  --:--"
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"  {minutes:02d}:{secs:02d}"


class BunkerMonitor:
    def __init__(self, store: BlendStore, capacity_t: float = config.BUNKER_CAPACITY_T,
                 bunker: Optional[int] = None, poll_seconds: float = 10.0):
        self.store = store
        self.binder = NextBlendBinder(capacity_t=capacity_t)
        self.colors = CoalColorMap()
        self.bunker = bunker
        self.poll_seconds = poll_seconds
        self._bound_version = None
        self._last_poll = 0.0
        self.last_events: List[str] = []
        self.binder.subscribe(self._on_event)

    def _on_event(self, event: Dict[str, Any]):
        if event["type"] == "layer_advanced":
            layer = event["activeLayer"]
            self.last_events.append(f"Bunker {event['bunker'] + 1}: now firing {layer['coal']} (row {layer['rowIndex']})")
        elif event["type"] == "bunker_empty":
            self.last_events.append(f"Bunker {event['bunker'] + 1}: EMPTY")
        self.last_events = self.last_events[-5:]

    def refresh(self, now: Optional[float] = None) -> bool:
        """Rebind when the stored latest blend changed. True if it did."""
        now = time.monotonic() if now is None else now
        if self._bound_version is not None and now - self._last_poll < self.poll_seconds:
            return False
        self._last_poll = now

        latest = self.store.latest_blend()
        version = (latest["_id"], latest["updatedAt"]) if latest else ("none", None)
        if version == self._bound_version:
            return False
        coals = self.store.list_coals()
        self.colors.sync_from_catalog(coals)
        self.binder.bind(latest, coals)
        self._bound_version = version
        logger.info("Monitoring blend %s", version[0])
        return True

    def render(self) -> str:
        lines = []
        lines.append("\033[92m")
        lines.append(f" COAL BLEND MONITOR | {datetime.now().strftime('%H:%M:%S')}")
        lines.append(RESET)
        lines.append("=" * 60)
        lines.extend(self._render_stats())
        lines.append("")
        bunkers = self.binder.bunkers
        if self.bunker is not None:
            bunkers = [b for b in bunkers if b.index == self.bunker]
        if not bunkers:
            lines.append(" No blend stored yet.")
        for state in bunkers:
            lines.extend(self._render_bunker(state))
        if self.last_events:
            lines.append(" [ EVENTS ]")
            lines.append("-" * 45)
            lines.extend(f" {e}" for e in self.last_events)
        return "\n".join(lines)

    def _render_stats(self) -> List[str]:
        m = self.binder.metrics()
        return [
            f" {'GEN':<10} {fmt(m.get('generation')):>10}   {'TOTALFLOW':<10} {fmt(m['totalFlow']):>10}",
            f" {'AVGGCV':<10} {fmt(m['avgGCV']):>10}   {'AVGAFT':<10} {fmt(m['avgAFT']):>10}",
            f" {'HEATRATE':<10} {fmt(m['heatRate']):>10}   {'COSTRATE':<10} {fmt(m['costRate']):>10}",
        ]

    def _render_bunker(self, state) -> List[str]:
        lines = [f" [ BUNKER {state.index + 1} // {state.flow:.1f} t/h ]", "-" * 45]
        if not state.layers:
            lines.append("   (empty)")
        # Top of the silo first
        for pos in reversed(range(len(state.layers))):
            layer = state.layers[pos]
            color = ansi_fg(self.colors.color_for(layer.coal))
            bar = "█" * max(1, int(layer.percent / 5))
            if state.active is None or pos < state.active:
                lines.append(f"   \033[90m{layer.coal:<15} {layer.percent:>6.1f}% drained{RESET}")
            elif pos == state.active:
                lines.append(f" > {color}{layer.coal:<15} {layer.percent:>6.1f}% {bar}{RESET} {fmt_countdown(state.remaining)}")
            else:
                lines.append(f"   {color}{layer.coal:<15} {layer.percent:>6.1f}% {bar}{RESET}")
        lines.append("")
        return lines

    def start(self, interval: float = 1.0):
        try:
            while True:
                self.refresh()
                self.binder.tick(interval)
                clear_screen()
                print(self.render())
                time.sleep(interval)
        except KeyboardInterrupt:
            print("\nShutting down bunker monitor...")
            sys.exit(0)


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description="Terminal view of bunker layers and blend metrics")
    parser.add_argument("--db", default=config.DB_PATH, help="SQLite database written by the server")
    parser.add_argument("--bunker", type=int, choices=range(1, 7), help="Show a single bunker (1-6)")
    parser.add_argument("--interval", type=float, default=config.TICK_SECONDS)
    args = parser.parse_args(argv)

    config.configure_logging()
    store = BlendStore(args.db)
    store.init_db()
    monitor = BunkerMonitor(store, bunker=args.bunker - 1 if args.bunker else None)
    monitor.start(args.interval)


if __name__ == "__main__":
    main()
