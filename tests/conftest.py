"""Pytest configuration and shared fixtures."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from workwear.database import Base
from workwear.models.domain import Employee, ClothingType, ClothingItem, Transaction, Confirmation
from workwear.models.audit import AuditEvent
from workwear.models.enums import EmployeeRole, EmployeeStatus, ClothingCategory
from workwear.services.inventory import Inventory


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()


def _employee(db_session, first_name, last_name, **kwargs):
    employee = Employee(first_name=first_name, last_name=last_name, **kwargs)
    db_session.add(employee)
    db_session.commit()
    db_session.refresh(employee)
    return employee


@pytest.fixture
def staff(db_session):
    """Warehouse staff member who performs issues and returns."""
    return _employee(
        db_session, "Wanda", "Lager",
        email="wanda@example.com", department="Warehouse", role=EmployeeRole.WAREHOUSE,
    )


@pytest.fixture
def employee(db_session):
    """Active employee receiving clothing."""
    return _employee(
        db_session, "Erik", "Muster",
        email="erik@example.com", department="Production",
    )


@pytest.fixture
def other_employee(db_session):
    return _employee(
        db_session, "Olga", "Beispiel",
        email="olga@example.com", department="Logistics",
    )


@pytest.fixture
def inactive_employee(db_session):
    return _employee(
        db_session, "Ida", "Inaktiv",
        email="ida@example.com", status=EmployeeStatus.INACTIVE,
    )


@pytest.fixture
def jacket_type(db_session):
    return Inventory(db_session).create_type("Work jacket", ClothingCategory.POOL, "JAC")


@pytest.fixture
def make_items(db_session, jacket_type):
    """Factory: generate `n` AVAILABLE jackets."""
    def _make(n=1, size="L"):
        return Inventory(db_session).generate_items(jacket_type.id, size=size, quantity=n)
    return _make
