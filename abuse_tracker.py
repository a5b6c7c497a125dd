from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple
import threading
import time

from config import ABUSE_HISTORY_WINDOW

ONE_HOUR = 3600


@dataclass
class IPReputationRecord:
    ip: str
    submission_timestamps: List[float] = field(default_factory=list)
    verification_failures: List[float] = field(default_factory=list)
    flagged: bool = False


def _count_since(timestamps: List[float], cutoff: float) -> int:
    return sum(1 for timestamp in timestamps if timestamp > cutoff)


class AbuseTracker:
    """
    Process-local record of submission history and blocked IPs.

    Records are spread over lock-striped buckets so concurrent requests from
    the same IP serialize on one bucket lock, and the sweep only ever holds a
    single bucket lock at a time. Blocked IPs are never unblocked automatically.
    """

    def __init__(
        self,
        history_window: int = ABUSE_HISTORY_WINDOW,
        buckets: int = 64,
        clock: Callable[[], float] = time.time,
    ):
        self.history_window = history_window
        self.clock = clock
        self._buckets: List[Tuple[threading.Lock, Dict[str, IPReputationRecord]]] = [
            (threading.Lock(), {}) for _ in range(max(buckets, 1))
        ]
        self._blocked: Set[str] = set()
        self._blocked_lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    def _bucket(self, ip: str) -> Tuple[threading.Lock, Dict[str, IPReputationRecord]]:
        return self._buckets[hash(ip) % len(self._buckets)]

    def _get_or_create(self, records: Dict[str, IPReputationRecord], ip: str) -> IPReputationRecord:
        record = records.get(ip)
        if record is None:
            record = IPReputationRecord(ip=ip)
            records[ip] = record
        return record

    def record_event(self, ip: str) -> int:
        """Append a submission timestamp; return submissions seen in the last hour."""
        now = self.clock()
        lock, records = self._bucket(ip)
        with lock:
            record = self._get_or_create(records, ip)
            record.submission_timestamps.append(now)
            return _count_since(record.submission_timestamps, now - ONE_HOUR)

    def record_verification_failure(self, ip: str) -> int:
        """Append a failed verification; return failures seen in the last hour."""
        now = self.clock()
        lock, records = self._bucket(ip)
        with lock:
            record = self._get_or_create(records, ip)
            record.verification_failures.append(now)
            return _count_since(record.verification_failures, now - ONE_HOUR)

    def flag(self, ip: str) -> None:
        lock, records = self._bucket(ip)
        with lock:
            self._get_or_create(records, ip).flagged = True

    def is_flagged(self, ip: str) -> bool:
        lock, records = self._bucket(ip)
        with lock:
            record = records.get(ip)
            return bool(record and record.flagged)

    def submission_count(self, ip: str) -> int:
        lock, records = self._bucket(ip)
        with lock:
            record = records.get(ip)
            return len(record.submission_timestamps) if record else 0

    def block(self, ip: str) -> None:
        with self._blocked_lock:
            if ip not in self._blocked:
                print(f"BLOCKED IP: {ip} added to block list")
            self._blocked.add(ip)

    def is_blocked(self, ip: str) -> bool:
        with self._blocked_lock:
            return ip in self._blocked

    def blocked_ips(self) -> Set[str]:
        with self._blocked_lock:
            return set(self._blocked)

    def sweep(self) -> int:
        """
        Drop timestamps older than the history window and delete records left
        with no history, flagged or not. Blocks are untouched. Returns the
        number of records removed.
        """
        cutoff = self.clock() - self.history_window
        removed = 0
        for lock, records in self._buckets:
            with lock:
                for ip in list(records.keys()):
                    record = records[ip]
                    record.submission_timestamps = [
                        timestamp for timestamp in record.submission_timestamps
                        if timestamp > cutoff
                    ]
                    record.verification_failures = [
                        timestamp for timestamp in record.verification_failures
                        if timestamp > cutoff
                    ]
                    if not record.submission_timestamps and not record.verification_failures:
                        del records[ip]
                        removed += 1
        if removed:
            print(f"Abuse tracker sweep removed {removed} stale IP records")
        return removed

    def start_sweeper(self, interval: float, on_sweep: Optional[Callable[[], None]] = None) -> None:
        """Run sweep() every ``interval`` seconds on a daemon thread."""
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()

        def run():
            while not self._stop_sweeper.wait(interval):
                try:
                    self.sweep()
                    if on_sweep:
                        on_sweep()
                except Exception as e:
                    print(f"Abuse tracker sweep failed: {e}")

        self._sweeper = threading.Thread(target=run, name="abuse-tracker-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper:
            self._sweeper.join(timeout=5)
        self._sweeper = None

    def stats(self) -> dict:
        tracked = 0
        flagged = 0
        for lock, records in self._buckets:
            with lock:
                tracked += len(records)
                flagged += sum(1 for record in records.values() if record.flagged)
        return {
            "tracked_ips": tracked,
            "flagged_ips": flagged,
            "blocked_ips": len(self.blocked_ips()),
            "history_window_seconds": self.history_window,
        }

    def reset(self) -> None:
        for lock, records in self._buckets:
            with lock:
                records.clear()
        with self._blocked_lock:
            self._blocked.clear()
