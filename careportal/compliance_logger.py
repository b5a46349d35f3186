from datetime import datetime, timezone
from typing import Optional, Any, Callable
import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from careportal.database import SessionLocal
from careportal import models


class ComplianceLogger:
	"""Compliance logger that stores consent and disclosure events in the AuditLog table."""

	def __init__(self, session_factory: Callable[[], Session] = SessionLocal, standard: str = 'HIPAA'):
		self.session_factory = session_factory
		self.standard = standard
		self.logger = logging.getLogger(__name__)

	@staticmethod
	def normalize_action(action: str) -> models.AuditAction:
		"""Reduce free-form action names to the AuditAction enum."""
		action_upper = (action or '').upper()
		if action_upper in models.AuditAction.__members__:
			return models.AuditAction[action_upper]
		if 'DENIED' in action_upper or 'WITHHELD' in action_upper:
			return models.AuditAction.ACCESS_DENIED
		if 'APPROVE' in action_upper:
			return models.AuditAction.APPROVE
		if 'DENY' in action_upper:
			return models.AuditAction.DENY
		if 'REVOKE' in action_upper:
			return models.AuditAction.REVOKE
		if 'DISCLOS' in action_upper or 'RENDER' in action_upper:
			return models.AuditAction.DISCLOSE
		if action_upper.endswith('_CREATE') or action_upper.startswith('CREATE_'):
			return models.AuditAction.CREATE
		if action_upper.endswith('_DELETE') or action_upper.startswith('DELETE_') or 'CANCEL' in action_upper:
			return models.AuditAction.DELETE
		if 'BOOK' in action_upper or 'EXTEND' in action_upper or 'RESCHEDULE' in action_upper or 'UPDATE' in action_upper:
			return models.AuditAction.UPDATE
		return models.AuditAction.READ

	def log_event(
		self,
		actor_id: Optional[str],
		role: Optional[str],
		action: str,
		category: str,
		details: Optional[str] = None,
		severity: str = 'INFO',
		resource_type: Optional[str] = None,
		resource_id: Optional[str] = None,
		**_: Any
	) -> None:
		"""Logs an event into the AuditLog table.

		Audit failures are reported on the application log and never undo the
		business operation that triggered them.
		"""
		db = self.session_factory()
		try:
			db_log = models.AuditLog(
				actor_id=actor_id,
				actor_role=str(role.value if hasattr(role, 'value') else role) if role else None,
				action=self.normalize_action(action),
				category=category or 'GENERAL',
				severity=severity or 'INFO',
				resource_type=resource_type,
				resource_id=resource_id,
				details=details,
				timestamp=datetime.now(timezone.utc),
			)
			db.add(db_log)
			db.commit()
		except SQLAlchemyError as e:
			db.rollback()
			self.logger.error(f"Failed to save compliance log to DB: {e}")
		finally:
			db.close()

	def log_access(
		self,
		actor_id: Optional[str],
		role: Optional[str],
		resource_type: str,
		resource_id: str,
		purpose: str,
		severity: str = 'INFO',
		**kwargs: Any
	) -> None:
		"""Logs a data disclosure into the AuditLog table."""
		self.log_event(
			actor_id=actor_id,
			role=role,
			action='DISCLOSE',
			category='DATA_ACCESS',
			details=f"Disclosed {resource_type}:{resource_id} for {purpose}",
			severity=severity,
			resource_type=resource_type,
			resource_id=resource_id,
			**kwargs
		)


# Singleton instance for global import
compliance_logger = ComplianceLogger()
