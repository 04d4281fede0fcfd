"""Employee lookup. The directory itself is synced from outside this service."""
import logging
from typing import Optional
from sqlalchemy.orm import Session

from workwear.models.audit import AuditAction
from workwear.models.domain import Employee
from workwear.models.enums import EmployeeRole, EmployeeStatus
from workwear.services.audit import AuditLog
from workwear.services.concurrency import atomic
from workwear.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class EmployeeDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_employee(self, employee_id: int, label: str = "Employee") -> Employee:
        employee = self.db.get(Employee, employee_id)
        if employee is None:
            raise NotFoundError(f"{label} {employee_id} not found")
        return employee

    def require_active(self, employee_id: int) -> Employee:
        """Issuance target: must exist and be ACTIVE."""
        employee = self.get_employee(employee_id)
        if not employee.is_active:
            raise ValidationError(
                f"Employee {employee_id} is not active (status: {employee.status.value})",
                failures=[{"id": employee_id, "code": "EMPLOYEE_INACTIVE",
                           "reason": f"status is {employee.status.value}"}],
            )
        return employee

    def create_employee(
        self,
        first_name: str,
        last_name: str,
        email: Optional[str] = None,
        department: Optional[str] = None,
        role: EmployeeRole = EmployeeRole.READ_ONLY,
        status: EmployeeStatus = EmployeeStatus.ACTIVE,
        is_hidden: bool = False,
        performed_by=None,
    ) -> Employee:
        """Seed or mirror an employee record."""
        employee = Employee(
            first_name=first_name,
            last_name=last_name,
            email=email,
            department=department,
            role=role,
            status=status,
            is_hidden=is_hidden,
        )
        with atomic(self.db, "create employee"):
            self.db.add(employee)
            self.db.flush()
            AuditLog(self.db).record(
                "Employee", employee.id, AuditAction.EMPLOYEE_CREATED, performed_by,
                diff={"email": email, "department": department, "status": status.value},
            )
        self.db.refresh(employee)
        logger.info("Created employee %s (%s)", employee.id, employee.full_name)
        return employee
