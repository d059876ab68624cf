"""
Concurrent salary-transfer workload under injected faults.

Each worker moves money between two employees' salaries inside one
transaction. Whatever mix of injected failures, deadlock victims, update
conflicts and rollbacks occurs, total payroll must not change.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from txsandbox.config import EngineConfig
from txsandbox.database import SandboxDB
from txsandbox.errors import SandboxError
from txsandbox.hr_operations import EMPLOYEES
from txsandbox.models.lock import KeyRange
from txsandbox.models.transaction import IsolationLevel
from .chaos_config import ChaosConfig
from .chaos_proxy import ChaosProxy
from .exceptions.chaos_exception import ChaosException

logger = logging.getLogger(__name__)

DEPARTMENTS = [
    {"DepartmentID": 1, "DepartmentName": "Engineering", "LocationID": 10, "Budget": 500000},
    {"DepartmentID": 2, "DepartmentName": "Sales", "LocationID": 20, "Budget": 250000},
]


def seed_employees(db: SandboxDB, count: int = 6, salary: float = 1000) -> None:
    employees = [
        {
            "EmployeeID": i,
            "FirstName": f"Emp{i}",
            "LastName": "Chaos",
            "DepartmentID": 1 + i % 2,
            "Salary": salary,
            "Performance_Rating": 3,
        }
        for i in range(1, count + 1)
    ]
    db.hr.seed(DEPARTMENTS, employees)


def transfer_salary(
    db,
    source_id: int,
    target_id: int,
    amount: float,
    isolation_level: IsolationLevel = IsolationLevel.REPEATABLE_READ,
) -> bool:
    """
    Move ``amount`` of salary from one employee to another in one transaction.

    Returns True on commit. Any error rolls the transaction back and is re-raised.
    """
    txn_id = db.begin_transaction(isolation_level)
    try:
        source = db.select(EMPLOYEES, KeyRange(EMPLOYEES, "EmployeeID", source_id, source_id), txn_id=txn_id)[0]
        target = db.select(EMPLOYEES, KeyRange(EMPLOYEES, "EmployeeID", target_id, target_id), txn_id=txn_id)[0]
        db.update(txn_id, EMPLOYEES, source["_row_id"], {"Salary": source["Salary"] - amount})
        db.update(txn_id, EMPLOYEES, target["_row_id"], {"Salary": target["Salary"] + amount})
        return db.commit_transaction(txn_id)
    except Exception:
        db.rollback_transaction(txn_id)
        raise


def run_chaos(
    chaos: Optional[ChaosConfig] = None,
    workers: int = 4,
    transfers_per_worker: int = 25,
    employees: int = 6,
    isolation_level: IsolationLevel = IsolationLevel.REPEATABLE_READ,
    seed: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Run the transfer workload and report outcome counts plus the payroll check.

    The database gets a short lock timeout so a lost wakeup cannot hang a run.
    """
    real_db = SandboxDB(EngineConfig(lock_timeout=5.0))
    seed_employees(real_db, employees)
    expected_payroll = real_db.hr.total_payroll()

    chaos = chaos or ChaosConfig(enabled=True, failure_rate=0.1, delay_chance=0.3, max_delay=0.01, seed=seed)
    db = ChaosProxy(real_db, chaos)
    rng = random.Random(seed)
    pairs = [
        (rng.sample(range(1, employees + 1), 2), rng.randint(1, 50))
        for _ in range(workers * transfers_per_worker)
    ]

    outcomes = {"committed": 0, "chaos_failures": 0, "engine_errors": 0}
    errors_by_kind: Dict[str, int] = {}

    def worker(batch):
        local = {"committed": 0, "chaos_failures": 0, "engine_errors": 0}
        kinds: Dict[str, int] = {}
        for (source_id, target_id), amount in batch:
            try:
                if transfer_salary(db, source_id, target_id, amount, isolation_level):
                    local["committed"] += 1
            except ChaosException:
                local["chaos_failures"] += 1
            except SandboxError as e:
                local["engine_errors"] += 1
                kind = e.kind.value if e.kind else type(e).__name__
                kinds[kind] = kinds.get(kind, 0) + 1
                logger.info(f"[CHAOS TEST] transfer {source_id}->{target_id} failed: {e}")
        return local, kinds

    batches = [pairs[i::workers] for i in range(workers)]
    start = time.time()
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for local, kinds in pool.map(worker, batches):
            for key, value in local.items():
                outcomes[key] += value
            for kind, value in kinds.items():
                errors_by_kind[kind] = errors_by_kind.get(kind, 0) + value

    final_payroll = real_db.hr.total_payroll()
    result = {
        **outcomes,
        "errors_by_kind": errors_by_kind,
        "expected_payroll": expected_payroll,
        "final_payroll": final_payroll,
        "payroll_preserved": final_payroll == expected_payroll,
        "active_transactions": real_db.transaction_manager.get_active_transaction_count(),
        "locks_held": real_db.lock_manager.get_lock_count(),
        "elapsed": round(time.time() - start, 3),
        "db": db,
    }
    logger.info(
        f"[CHAOS TEST] committed={outcomes['committed']} chaos={outcomes['chaos_failures']} "
        f"engine={outcomes['engine_errors']} payroll {expected_payroll} -> {final_payroll}"
    )
    return result


def main():
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    result = run_chaos(seed=7)
    db = result["db"]

    print("[CHAOS TEST] Final database state:")
    db.print_status()
    print(f"[CHAOS TEST] Committed transfers: {result['committed']}")
    print(f"[CHAOS TEST] Injected failures: {result['chaos_failures']}")
    print(f"[CHAOS TEST] Engine errors: {result['errors_by_kind']}")
    print(
        f"[CHAOS TEST] Payroll {result['expected_payroll']} -> {result['final_payroll']} "
        f"({'preserved' if result['payroll_preserved'] else 'VIOLATED'})"
    )
    db.print_chaos_metrics()


if __name__ == "__main__":
    main()
