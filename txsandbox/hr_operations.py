"""HRSystem-specific operations used by the tutorial scenarios."""

from typing import Any, Dict, List, Optional
from .catalog import Column
from .models.lock import KeyRange

DEPARTMENTS = "HR.Departments"
EMPLOYEES = "HR.EMP_Details"

NUMBER = (int, float)


class HROperations:
    """
    Domain operations over the HRSystem demo schema.

    This class provides the statements the tutorials run against
    ``HR.Departments`` and ``HR.EMP_Details`` on top of the sandbox's
    transactional primitives.
    """

    def __init__(self, database):
        """
        Initialize HR operations with a database instance.

        Args:
            database: SandboxDB instance
        """
        self.db = database

    def create_schema(self) -> None:
        """Register the HRSystem tables with the catalog (once)."""
        if not self.db.catalog.has_table(DEPARTMENTS):
            self.db.create_table(
                DEPARTMENTS,
                [
                    Column("DepartmentID", int, nullable=False),
                    Column("DepartmentName", str, nullable=False),
                    Column("LocationID", int),
                    Column("Budget", NUMBER),
                ],
                checks={"CK_Departments_Budget": lambda p: p.get("Budget") is None or p["Budget"] >= 0},
            )
        if not self.db.catalog.has_table(EMPLOYEES):
            self.db.create_table(
                EMPLOYEES,
                [
                    Column("EmployeeID", int, nullable=False),
                    Column("FirstName", str, nullable=False),
                    Column("LastName", str, nullable=False),
                    Column("Email", str),
                    Column("DepartmentID", int),
                    Column("ManagerID", int),
                    Column("Salary", NUMBER),
                    Column("Performance_Rating", int),
                ],
                checks={
                    "CK_EMP_Details_Salary": lambda p: p.get("Salary") is None or p["Salary"] >= 0,
                    "CK_EMP_Details_Rating": lambda p: p.get("Performance_Rating") is None
                    or 1 <= p["Performance_Rating"] <= 5,
                },
            )

    def seed(self, departments: List[Dict[str, Any]], employees: List[Dict[str, Any]]) -> None:
        """Load departments and employees in one committed transaction."""
        self.create_schema()
        txn_id = self.db.begin_transaction()
        try:
            for department in departments:
                self.db.insert(txn_id, DEPARTMENTS, department)
            for employee in employees:
                self.db.insert(txn_id, EMPLOYEES, employee)
            self.db.commit_transaction(txn_id)
        except Exception:
            self.db.rollback_transaction(txn_id)
            raise

    def find_employee(self, employee_id: int, txn_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Employee row by EmployeeID, or None."""
        rows = self.db.select(EMPLOYEES, KeyRange(EMPLOYEES, "EmployeeID", employee_id, employee_id), txn_id=txn_id)
        return rows[0] if rows else None

    def find_department(self, department_id: int, txn_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        rows = self.db.select(
            DEPARTMENTS, KeyRange(DEPARTMENTS, "DepartmentID", department_id, department_id), txn_id=txn_id
        )
        return rows[0] if rows else None

    def employees_in_department(self, department_id: int, txn_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """SELECT * FROM HR.EMP_Details WHERE DepartmentID = @id."""
        return self.db.select(
            EMPLOYEES, KeyRange(EMPLOYEES, "DepartmentID", department_id, department_id), txn_id=txn_id
        )

    def give_raise(self, txn_id: int, employee_id: int, percent: float) -> float:
        """
        Raise one employee's salary by ``percent``.

        Args:
            txn_id: Transaction ID
            employee_id: EmployeeID of the employee
            percent: Increase in percent (negative for a cut)

        Returns:
            float: The new salary

        Raises:
            ValueError: If the employee does not exist or has no salary
        """
        employee = self.find_employee(employee_id, txn_id)
        if employee is None:
            raise ValueError(f"Employee {employee_id} not found")
        if employee.get("Salary") is None:
            raise ValueError(f"Employee {employee_id} has no salary")

        new_salary = round(employee["Salary"] * (1 + percent / 100.0), 2)
        self.db.update(txn_id, EMPLOYEES, employee["_row_id"], {"Salary": new_salary})
        return new_salary

    def give_department_raise(self, txn_id: int, department_id: int, percent: float) -> int:
        """
        UPDATE HR.EMP_Details SET Salary = Salary * (1 + pct) WHERE DepartmentID = @id.

        Returns:
            int: Number of rows updated
        """
        updated = 0
        for employee in self.employees_in_department(department_id, txn_id):
            if employee.get("Salary") is None:
                continue
            new_salary = round(employee["Salary"] * (1 + percent / 100.0), 2)
            if self.db.update(txn_id, EMPLOYEES, employee["_row_id"], {"Salary": new_salary}):
                updated += 1
        return updated

    def transfer_employee(self, txn_id: int, employee_id: int, department_id: int) -> bool:
        """
        Move an employee to another department.

        Raises:
            ValueError: If the employee or the target department does not exist
        """
        employee = self.find_employee(employee_id, txn_id)
        if employee is None:
            raise ValueError(f"Employee {employee_id} not found")
        if self.find_department(department_id, txn_id) is None:
            raise ValueError(f"Department {department_id} not found")
        return self.db.update(txn_id, EMPLOYEES, employee["_row_id"], {"DepartmentID": department_id})

    def adjust_budget(self, txn_id: int, department_id: int, delta: float) -> float:
        """Add ``delta`` to a department budget; the CHECK constraint rejects negatives."""
        department = self.find_department(department_id, txn_id)
        if department is None:
            raise ValueError(f"Department {department_id} not found")
        new_budget = (department.get("Budget") or 0) + delta
        self.db.update(txn_id, DEPARTMENTS, department["_row_id"], {"Budget": new_budget})
        return new_budget

    def department_payroll(self, txn_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Headcount, total and average salary per department."""
        return self.db.aggregate(
            EMPLOYEES,
            {
                "Headcount": ("COUNT", None),
                "TotalSalary": ("SUM", "Salary"),
                "AvgSalary": ("AVG", "Salary"),
                "MaxSalary": ("MAX", "Salary"),
            },
            group_by=["DepartmentID"],
            txn_id=txn_id,
        )

    def total_payroll(self, txn_id: Optional[int] = None) -> float:
        rows = self.db.aggregate(EMPLOYEES, {"TotalSalary": ("SUM", "Salary")}, txn_id=txn_id)
        return rows[0]["TotalSalary"] or 0

    def salary_ranking(self, txn_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """RANK() OVER (PARTITION BY DepartmentID ORDER BY Salary DESC) AS SalaryRank."""
        return self.db.window(
            EMPLOYEES,
            "RANK",
            "SalaryRank",
            partition_by=["DepartmentID"],
            order_by=[("Salary", "DESC")],
            txn_id=txn_id,
        )

    def top_earners(self, per_department: int = 1, txn_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Employees whose salary rank within their department is at most ``per_department``."""
        return [row for row in self.salary_ranking(txn_id) if row["SalaryRank"] <= per_department]

    def reporting_chain(self, employee_id: int, txn_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        The employee followed by each manager up to the top of the hierarchy.

        Same result as the recursive CTE walking ManagerID; evaluated
        iteratively inside one transaction. A management cycle stops the walk.
        """
        if txn_id is None:
            own_txn = self.db.begin_transaction()
            try:
                chain = self.reporting_chain(employee_id, own_txn)
            except Exception:
                self.db.rollback_transaction(own_txn)
                raise
            self.db.commit_transaction(own_txn)
            return chain

        chain = []
        seen = set()
        current = self.find_employee(employee_id, txn_id)
        level = 0
        while current is not None and current["EmployeeID"] not in seen:
            seen.add(current["EmployeeID"])
            entry = dict(current)
            entry["Level"] = level
            chain.append(entry)
            manager_id = current.get("ManagerID")
            if manager_id is None:
                break
            current = self.find_employee(manager_id, txn_id)
            level += 1
        return chain
