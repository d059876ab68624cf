import logging
import random
import threading
import time
from collections import defaultdict
from .exceptions.chaos_exception import ChaosException

logger = logging.getLogger(__name__)


class ChaosConfig:
    """
    Fault-injection settings for sandbox calls, plus the metrics they produce.

    Failures are raised before the wrapped call runs, so an injected failure
    never leaves a half-applied statement behind. Delays widen the windows in
    which concurrent transactions contend for locks.
    """

    def __init__(
        self,
        enabled: bool = False,
        failure_rate: float = 0.1,
        delay_chance: float = 0.2,
        max_delay: float = 0.05,
        seed=None,
    ):
        """
        Args:
            enabled: Whether chaos is injected at all.
            failure_rate: Probability that a call fails before running.
            delay_chance: Probability that a call is delayed first.
            max_delay: Upper bound of an injected delay, in seconds.
            seed: Optional seed for reproducible runs.
        """
        for name, rate in (("failure_rate", failure_rate), ("delay_chance", delay_chance)):
            if not 0.0 <= rate <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {rate}")
        if max_delay < 0:
            raise ValueError("max_delay must be >= 0")

        self.enabled = enabled
        self.failure_rate = failure_rate
        self.delay_chance = delay_chance
        self.max_delay = max_delay
        self.random = random.Random(seed)
        self.lock = threading.Lock()

        self.total_operations = 0
        self.failures_injected = 0
        self.delays_injected = 0
        self.total_delay_time = 0.0
        self.failures_by_context = defaultdict(int)
        self.delays_by_context = defaultdict(int)

    def maybe_fail(self, context: str) -> None:
        """Count the call and raise ChaosException with probability ``failure_rate``."""
        with self.lock:
            self.total_operations += 1
            if not (self.enabled and self.random.random() < self.failure_rate):
                return
            self.failures_injected += 1
            self.failures_by_context[context] += 1
        logger.warning(f"[CHAOS] Injected failure in {context}")
        raise ChaosException(f"Chaos failure occurred during {context}.", context=context)

    def maybe_delay(self, context: str) -> float:
        """Sleep up to ``max_delay`` with probability ``delay_chance``; returns the delay."""
        with self.lock:
            if not (self.enabled and self.random.random() < self.delay_chance):
                return 0.0
            delay = self.random.uniform(0, self.max_delay)
            self.delays_injected += 1
            self.delays_by_context[context] += 1
            self.total_delay_time += delay
        logger.debug(f"[CHAOS] Injected delay of {delay:.3f}s in {context}")
        time.sleep(delay)
        return delay

    def get_metrics(self):
        with self.lock:
            return {
                "Summary": {
                    "total_operations": self.total_operations,
                    "failures_injected": self.failures_injected,
                    "delays_injected": self.delays_injected,
                    "total_delay_time": round(self.total_delay_time, 3),
                },
                "Failures by Context": dict(self.failures_by_context),
                "Delays by Context": dict(self.delays_by_context),
            }

    def print_metrics(self):
        metrics = self.get_metrics()

        print("\n=== Chaos Metrics Summary ===")
        for key, value in metrics["Summary"].items():
            print(f"{key.replace('_', ' ').capitalize()}: {value}")

        for title, section in (
            ("Failures by Context", "failures"),
            ("Delays by Context", "delays"),
        ):
            print(f"\n--- {title} ---")
            if metrics[title]:
                for context, count in sorted(metrics[title].items()):
                    print(f"{context}: {count}")
            else:
                print(f"No {section} recorded.")
        print("=============================\n")
