from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dynamic_grid.models_sqlalchemy.models import GridColumnState
from dynamic_grid.services.procedure_registry import validate_procedure_name
from dynamic_grid.utils.logger import logger


class ColumnStateStore:
    """Per-user saved grid layout, keyed by (user_id, procedure_name).

    The state document belongs to the client; it is stored and returned as-is.
    """

    def _find(self, db: Session, user_id: str, procedure_name: str) -> Optional[GridColumnState]:
        return (
            db.query(GridColumnState)
            .filter(GridColumnState.user_id == str(user_id), GridColumnState.procedure_name == procedure_name)
            .first()
        )

    def load(self, db: Session, user_id: str, procedure_name: str) -> Optional[GridColumnState]:
        """Saved state, or None when the user never saved one (use defaults)."""
        procedure_name = validate_procedure_name(procedure_name)
        return self._find(db, user_id, procedure_name)

    def save(self, db: Session, user_id: str, procedure_name: str, column_state: str) -> GridColumnState:
        procedure_name = validate_procedure_name(procedure_name)
        now = datetime.now(timezone.utc)

        state = self._find(db, user_id, procedure_name)
        if state:
            state.column_state = column_state
            state.updated_at = now
        else:
            state = GridColumnState(
                id=str(uuid.uuid4()),
                user_id=str(user_id),
                procedure_name=procedure_name,
                column_state=column_state,
                created_at=now,
                updated_at=now,
            )
            db.add(state)

        try:
            db.commit()
        except IntegrityError:
            # A concurrent first save for the same key won; overwrite it.
            db.rollback()
            state = self._find(db, user_id, procedure_name)
            if state is None:
                raise
            state.column_state = column_state
            state.updated_at = now
            db.commit()

        db.refresh(state)
        logger.info(
            "column_state.save user_id=%s procedure=%s bytes=%d", user_id, procedure_name, len(column_state)
        )
        return state

    def delete(self, db: Session, user_id: str, procedure_name: str) -> bool:
        procedure_name = validate_procedure_name(procedure_name)
        state = self._find(db, user_id, procedure_name)
        if state is None:
            return False
        db.delete(state)
        db.commit()
        logger.info("column_state.reset user_id=%s procedure=%s", user_id, procedure_name)
        return True
