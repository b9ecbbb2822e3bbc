from __future__ import annotations

from datetime import date

from sqlalchemy import Date, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hospital_erp.models.base import AuditMixin, Base, SoftDeleteMixin


class Patient(Base, AuditMixin, SoftDeleteMixin):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    hospital_number: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)

    bills = relationship("Bill", back_populates="patient")

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
