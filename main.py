"""Main entry point for the HRSystem transaction sandbox tutorials."""

import logging

from txsandbox.database import SandboxDB
from txsandbox.errors import SandboxError, UpdateConflictError
from txsandbox.hr_operations import EMPLOYEES
from txsandbox.models.transaction import IsolationLevel
from txsandbox.session import Session

DEPARTMENTS = [
    {"DepartmentID": 1, "DepartmentName": "Engineering", "LocationID": 100, "Budget": 900000},
    {"DepartmentID": 2, "DepartmentName": "Sales", "LocationID": 200, "Budget": 400000},
    {"DepartmentID": 3, "DepartmentName": "Finance", "LocationID": 100, "Budget": 300000},
]

EMPLOYEE_ROWS = [
    {"EmployeeID": 1, "FirstName": "Ava", "LastName": "Reyes", "DepartmentID": 1,
     "ManagerID": None, "Salary": 180000, "Performance_Rating": 5},
    {"EmployeeID": 2, "FirstName": "Liam", "LastName": "Chen", "DepartmentID": 1,
     "ManagerID": 1, "Salary": 125000, "Performance_Rating": 4},
    {"EmployeeID": 3, "FirstName": "Noah", "LastName": "Patel", "DepartmentID": 1,
     "ManagerID": 2, "Salary": 98000, "Performance_Rating": 3},
    {"EmployeeID": 4, "FirstName": "Mia", "LastName": "Okafor", "DepartmentID": 2,
     "ManagerID": 1, "Salary": 87000, "Performance_Rating": 4},
    {"EmployeeID": 5, "FirstName": "Ethan", "LastName": "Silva", "DepartmentID": 2,
     "ManagerID": 4, "Salary": 100, "Performance_Rating": 2},
    {"EmployeeID": 6, "FirstName": "Zoe", "LastName": "Novak", "DepartmentID": 3,
     "ManagerID": 1, "Salary": 91000, "Performance_Rating": 3},
]


def main():
    """Walk through the transaction tutorials against the HRSystem schema."""
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    db = SandboxDB()

    print("=== HRSYSTEM TRANSACTION SANDBOX ===\n")

    # 1. Seed data
    print("1. Loading HR.Departments and HR.EMP_Details...")
    db.hr.seed(DEPARTMENTS, EMPLOYEE_ROWS)
    print("✓ Seed data committed")
    db.print_status()

    # 2. Savepoint scenario under SNAPSHOT
    print("2. SNAPSHOT transaction with a savepoint...")
    employee = db.hr.find_employee(5)
    row_id = employee["_row_id"]
    txn = db.begin_transaction(IsolationLevel.SNAPSHOT, name="SalaryFix")
    db.update(txn, EMPLOYEES, row_id, {"Salary": 150})
    db.save_transaction(txn, "S1")
    db.update(txn, EMPLOYEES, row_id, {"Salary": 200})
    db.rollback_transaction(txn, "S1")
    db.commit_transaction(txn)
    print(f"✓ Salary after ROLLBACK TRANSACTION S1 and COMMIT: {db.hr.find_employee(5)['Salary']}")

    # 3. Failed batch rolled back atomically
    print("3. Department raise that violates a CHECK constraint...")
    session = Session(db, xact_abort=True)
    before = db.hr.total_payroll()
    try:
        with session.transaction("BadRaise"):
            db.hr.give_department_raise(session.txn_id, 1, 10)
            db.hr.give_raise(session.txn_id, 3, -150)
    except SandboxError as e:
        print(f"✗ {e}")
    print(f"✓ Payroll unchanged: {before} -> {db.hr.total_payroll()}")

    # 4. Snapshot update conflict
    print("4. Two SNAPSHOT sessions updating the same salary...")
    first = db.begin_transaction(IsolationLevel.SNAPSHOT)
    second = db.begin_transaction(IsolationLevel.SNAPSHOT)
    db.hr.give_raise(first, 4, 5)
    db.hr.give_raise(second, 4, 3)
    db.commit_transaction(first)
    try:
        db.commit_transaction(second)
    except UpdateConflictError as e:
        print(f"✗ {e}")
    print(f"✓ Salary of employee 4: {db.hr.find_employee(4)['Salary']}")

    # 5. Reports
    print("5. Reports...")
    for row in db.hr.department_payroll():
        print(
            f"   Department {row['DepartmentID']}: {row['Headcount']} employees, "
            f"payroll {row['TotalSalary']}, average {row['AvgSalary']:.2f}"
        )
    for row in db.hr.top_earners():
        print(f"   Top earner in {row['DepartmentID']}: {row['FirstName']} {row['LastName']} ({row['Salary']})")
    chain = db.hr.reporting_chain(3)
    print("   Reporting chain of employee 3: " + " -> ".join(f"{r['FirstName']} (L{r['Level']})" for r in chain))

    print("\n=== FINAL SYSTEM STATUS ===")
    db.print_status()


if __name__ == "__main__":
    main()
