# fleet/models.py
from dataclasses import dataclass, field
from enum import Enum

from fleet.errors import InvalidStrategy


class LeaseState(str, Enum):
    REQUESTED = "Requested"
    RUNNING = "Running"
    REGISTERED = "Registered"
    STALE = "Stale"
    TERMINATED = "Terminated"


class PurchasingStrategy(str, Enum):
    SPOT_ONLY = "spotonly"
    BEST_EFFORT = "besteffort"
    MAX_PERFORMANCE = "maxperformance"
    NONE = "none"

    @classmethod
    def parse(cls, name: str | None) -> "PurchasingStrategy":
        """
        Case-insensitive lookup. An empty name means plain on-demand.
        """
        if not name:
            return cls.NONE
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise InvalidStrategy(f"Invalid purchasing strategy {name!r}. Allowed values: {allowed}")


@dataclass
class InstanceLease:
    label: str
    instance_id: str
    state: LeaseState = LeaseState.REQUESTED

    @property
    def live(self) -> bool:
        return self.state != LeaseState.TERMINATED


@dataclass(frozen=True)
class PriceQuote:
    instance_type: str
    on_demand_usd: float
    spot_usd: float


@dataclass(frozen=True)
class RunnerRecord:
    id: int
    name: str
    labels: frozenset
    status: str

    @property
    def online(self) -> bool:
        return self.status == "online"

    @classmethod
    def from_api(cls, payload: dict) -> "RunnerRecord":
        return cls(
            id=payload["id"],
            name=payload.get("name", ""),
            labels=frozenset(l["name"] for l in payload.get("labels", []) if l.get("name")),
            status=payload.get("status", "offline"),
        )


@dataclass
class RegistrationResult:
    registered: list = field(default_factory=list)
    unregistered: list = field(default_factory=list)


@dataclass
class RunContext:
    """
    Bookkeeping for a single provisioning run. Owned by the run that created it;
    two runs never share one.
    """

    run_label: str
    target_count: int
    strategy: PurchasingStrategy = PurchasingStrategy.NONE
    leases: dict = field(default_factory=dict)
    issued_labels: set = field(default_factory=set)
    registration_rounds: int = 0
    platform_requests: int = 0

    def track(self, lease: InstanceLease):
        current = self.leases.get(lease.label)
        if current is not None and current.live:
            raise ValueError(f"label {lease.label} already has a live lease ({current.instance_id})")
        self.leases[lease.label] = lease

    def registered(self):
        return [l for l in self.leases.values() if l.state == LeaseState.REGISTERED]

    def live(self):
        return [l for l in self.leases.values() if l.live]

    def label_instance_map(self):
        return {l.label: l.instance_id for l in self.registered()}
