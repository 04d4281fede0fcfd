"""Domain models - employees, clothing items and the custody ledger."""
from datetime import datetime
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Table,
    Text,
    text,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from workwear.database import Base
from workwear.models.enums import (
    EmployeeRole,
    EmployeeStatus,
    ClothingCategory,
    ClothingCondition,
    ClothingStatus,
    ProtocolType,
)


class Employee(Base):
    """
    A person who may hold clothing items.

    Employees are owned by the external directory; this service reads them
    and uses them as issuance targets and as acting users.
    """
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    department = Column(String, nullable=True)
    role = Column(SQLEnum(EmployeeRole), nullable=False, default=EmployeeRole.READ_ONLY)
    status = Column(SQLEnum(EmployeeStatus), nullable=False, default=EmployeeStatus.ACTIVE)
    is_hidden = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    held_items = relationship("ClothingItem", back_populates="current_employee")

    @property
    def is_active(self) -> bool:
        return self.status == EmployeeStatus.ACTIVE

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class ClothingType(Base):
    """A kind of garment or equipment, e.g. a high-visibility jacket."""
    __tablename__ = "clothing_types"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False)
    category = Column(SQLEnum(ClothingCategory), nullable=False, default=ClothingCategory.POOL)
    code_prefix = Column(String, nullable=False)  # Prefix for generated internal ids
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    items = relationship("ClothingItem", back_populates="type")


class ClothingItem(Base):
    """
    One physical, uniquely identified garment.

    Invariants:
    - ISSUED or IN_USE implies a current holder, AVAILABLE implies none
    - At most one open Transaction references the item
    - Status only changes through the transaction lifecycle, or the
      inventory retire/lost path for items nobody holds
    """
    __tablename__ = "clothing_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    internal_id = Column(String, nullable=False, unique=True)  # Human readable code
    qr_code = Column(String, nullable=False, unique=True)
    type_id = Column(Integer, ForeignKey("clothing_types.id"), nullable=False)
    size = Column(String, nullable=False)
    category = Column(SQLEnum(ClothingCategory), nullable=False)
    condition = Column(SQLEnum(ClothingCondition), nullable=False, default=ClothingCondition.NEW)
    status = Column(SQLEnum(ClothingStatus), nullable=False, default=ClothingStatus.AVAILABLE)
    current_employee_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    retired_at = Column(DateTime, nullable=True)
    retirement_reason = Column(String, nullable=True)

    # Optimistic lock: every UPDATE checks and bumps this counter
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    type = relationship("ClothingType", back_populates="items")
    current_employee = relationship("Employee", back_populates="held_items")
    transactions = relationship("Transaction", back_populates="clothing_item")

    __mapper_args__ = {"version_id_col": version}


confirmation_transactions = Table(
    "confirmation_transactions",
    Base.metadata,
    Column("confirmation_id", Integer, ForeignKey("confirmations.id"), primary_key=True),
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
)


class Transaction(Base):
    """
    One issue of one item to one employee, and optionally its return.

    Invariants:
    - returned_at, returned_by_id and condition_on_return are set together or not at all
    - Open while returned_at is null; closed exactly once
    - Never deleted - this is the custody ledger
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    clothing_item_id = Column(Integer, ForeignKey("clothing_items.id"), nullable=False, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False, index=True)

    issued_by_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    issued_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    condition_on_issue = Column(SQLEnum(ClothingCondition), nullable=False)

    # Set together on return
    returned_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    returned_at = Column(DateTime, nullable=True)
    condition_on_return = Column(SQLEnum(ClothingCondition), nullable=True)

    notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    clothing_item = relationship("ClothingItem", back_populates="transactions")
    employee = relationship("Employee", foreign_keys=[employee_id])
    issued_by = relationship("Employee", foreign_keys=[issued_by_id])
    returned_by = relationship("Employee", foreign_keys=[returned_by_id])
    confirmations = relationship(
        "Confirmation",
        secondary=confirmation_transactions,
        back_populates="transactions",
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        # At most one open transaction per item, enforced by the database
        Index(
            "uq_transactions_open_item",
            "clothing_item_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.returned_at is None


class Confirmation(Base):
    """
    Token-addressed acknowledgment of receipt for one or more issuances.

    Invariants:
    - confirmed_at and confirmed_by are set when confirmed is true
    - A confirmed confirmation is never reverted
    """
    __tablename__ = "confirmations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    token = Column(String(64), nullable=False, unique=True, index=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    protocol_type = Column(SQLEnum(ProtocolType), nullable=False)
    items_json = Column(JSON, nullable=True)  # Summary of the handed-over items
    expires_at = Column(DateTime, nullable=False)

    confirmed = Column(Boolean, nullable=False, default=False)
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(Integer, ForeignKey("employees.id"), nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    employee = relationship("Employee", foreign_keys=[employee_id])
    transactions = relationship(
        "Transaction",
        secondary=confirmation_transactions,
        back_populates="confirmations",
    )

    @property
    def transaction_ids(self):
        return sorted(t.id for t in self.transactions)

    def is_expired(self, now: datetime = None) -> bool:
        return (now or datetime.utcnow()) > self.expires_at
