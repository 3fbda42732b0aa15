"""
StaffDirectory -- staff accounts eligible for form assignment.

Responsibility:
    Registers, deactivates and looks up the staff accounts the Assignment
    Registry hands forms to.  Authentication is external; a staff
    account's ``id`` is the ``user_id`` its actor presents.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from deed_kernel.domain.forms import StaffAccount
from deed_kernel.domain.workflow import REVIEWER_ROLES, Role
from deed_kernel.exceptions import StaffNotFoundError, ValidationError
from deed_kernel.logging_config import get_logger
from deed_kernel.models.assignment import StaffAccountModel
from deed_kernel.services.base import BaseService

logger = get_logger("services.staff")


class StaffDirectory(BaseService):
    """CRUD over staff accounts."""

    def register(self, name: str, role: Role, staff_id: UUID | None = None) -> StaffAccount:
        if role not in REVIEWER_ROLES:
            raise ValidationError(
                f"Role '{role.value}' cannot hold a staff account", field="role",
            )
        if not name or not name.strip():
            raise ValidationError("Staff name is required", field="name")

        model = StaffAccountModel(
            name=name.strip(),
            role=role.value,
            is_active=True,
            created_at=self.clock.now(),
        )
        if staff_id is not None:
            model.id = staff_id
        self.session.add(model)
        self.session.flush()

        logger.info(
            "staff_registered",
            extra={"staff_id": str(model.id), "role": role.value},
        )
        return model.to_dto()

    def _model(self, staff_id: UUID) -> StaffAccountModel:
        model = self.session.get(StaffAccountModel, staff_id)
        if model is None:
            raise StaffNotFoundError(str(staff_id))
        return model

    def get(self, staff_id: UUID) -> StaffAccount:
        return self._model(staff_id).to_dto()

    def find(self, staff_id: UUID) -> StaffAccount | None:
        model = self.session.get(StaffAccountModel, staff_id)
        return model.to_dto() if model is not None else None

    def deactivate(self, staff_id: UUID) -> StaffAccount:
        model = self._model(staff_id)
        model.is_active = False
        self.session.flush()
        logger.info("staff_deactivated", extra={"staff_id": str(staff_id)})
        return model.to_dto()

    def list_active(self, role: Role | None = None) -> list[StaffAccount]:
        """Active accounts ordered by name then id."""
        stmt = select(StaffAccountModel).where(StaffAccountModel.is_active.is_(True))
        if role is not None:
            stmt = stmt.where(StaffAccountModel.role == role.value)
        stmt = stmt.order_by(StaffAccountModel.name, StaffAccountModel.id)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]
