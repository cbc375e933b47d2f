"""Core data models used across loader, session, scheduler and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from heatmatctl.core.errors import ConfigurationError

ROLE_TEMPERATURE = "temperature"
ROLE_TIMER = "timer"
ROLE_SET = "set"


def normalize_address(address: str) -> str:
    """Uppercase hex with separators stripped, used for address comparison."""
    return "".join(ch for ch in address.upper() if ch in "0123456789ABCDEF")


class ConnectionState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    RESOLVING = "resolving_characteristics"
    READY = "ready"
    DISCONNECTED = "disconnected"


class DisconnectReason(Enum):
    CONNECT_FAILED = "connect_failed"
    CHARACTERISTICS_MISSING = "characteristics_missing"
    SETUP_FAILED = "setup_failed"
    PEER_DROPPED = "peer_dropped"
    WRITE_FATAL = "write_fatal"
    WRITE_EXHAUSTED = "write_exhausted"
    READ_LOOP_EXIT = "read_loop_exit"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class DeviceIdentity:
    address: str
    service_uuid: str
    temp_char_uuid: str
    timer_char_uuid: str
    set_char_uuid: str | None = None
    init_payload: bytes | None = None
    name: str = "Heating Mat"
    adapter_id: str = "hci0"

    def __post_init__(self) -> None:
        missing = [
            key
            for key in ("address", "service_uuid", "temp_char_uuid", "timer_char_uuid")
            if not (getattr(self, key) or "").strip()
        ]
        if missing:
            raise ConfigurationError(f"Missing mandatory device settings: {', '.join(missing)}")
        if not normalize_address(self.address):
            raise ConfigurationError(f"Invalid device address '{self.address}'")
        object.__setattr__(self, "service_uuid", self.service_uuid.strip().lower())
        object.__setattr__(self, "temp_char_uuid", self.temp_char_uuid.strip().lower())
        object.__setattr__(self, "timer_char_uuid", self.timer_char_uuid.strip().lower())
        if self.set_char_uuid is not None:
            object.__setattr__(self, "set_char_uuid", self.set_char_uuid.strip().lower() or None)

    @property
    def normalized_address(self) -> str:
        return normalize_address(self.address)


@dataclass(frozen=True)
class DeviceVariant:
    """Hardware profile: level table, timer limits and OFF semantics."""

    id: str
    name: str
    levels: dict[int, float]
    off_at_or_below: float
    default_heat_temperature: float
    max_timer_hours: int = 15
    timer_off_packet: bytes | None = None

    @property
    def max_level(self) -> int:
        return max(self.levels)

    @property
    def off_temperature(self) -> float:
        return self.levels[0]

    def timer_percent(self, hours: int) -> float:
        return hours * 100 / self.max_timer_hours

    def level_for(self, celsius: float) -> int:
        """Map a requested temperature to the nearest supported heat level."""
        if celsius <= self.off_at_or_below:
            return 0
        heat_levels = sorted((lvl for lvl in self.levels if lvl > 0), key=lambda lvl: self.levels[lvl])
        lowest, highest = heat_levels[0], heat_levels[-1]
        if celsius <= self.levels[lowest]:
            return lowest
        if celsius >= self.levels[highest]:
            return highest
        # ties resolve towards the warmer step
        return min(heat_levels, key=lambda lvl: (abs(self.levels[lvl] - celsius), -self.levels[lvl]))

    def temperature_for(self, level: int) -> float | None:
        return self.levels.get(level)


@dataclass(frozen=True)
class Timings:
    scan_window_s: float = 5.0
    post_scan_settle_s: float = 1.0
    scan_interval_s: float = 15.0
    idle_poll_s: float = 10.0
    post_connect_settle_s: float = 0.5
    init_settle_s: float = 0.5
    debounce_s: float = 0.35
    write_stabilize_s: float = 0.3
    write_retries: int = 3
    write_retry_delay_s: float = 0.3
    read_gap_s: float = 0.2
    keepalive_initial_s: float = 3.0
    keepalive_interval_s: float = 10.0


@dataclass(frozen=True)
class DeviceSnapshot:
    target_temperature: float
    current_temperature: float
    heating: bool = False
    timer_hours: int = 0
    timer_on: bool = False
    last_heat_temperature: float = 0.0
    last_timer_hours: int = 0
    confirmed_level: int | None = None

    @classmethod
    def initial(cls, variant: DeviceVariant) -> DeviceSnapshot:
        return cls(
            target_temperature=variant.off_temperature,
            current_temperature=variant.off_temperature,
            last_heat_temperature=variant.default_heat_temperature,
        )


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str


@dataclass(frozen=True)
class MatConfig:
    identity: DeviceIdentity
    variant: DeviceVariant
    timings: Timings = field(default_factory=Timings)
