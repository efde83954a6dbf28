"""Exceptions du coeur de maintenance.

L'API et les jobs de fond les traduisent par classe:
NotFoundError -> 404, ConflictError -> 409, RuleValidationError -> 422.
"""
from typing import Any, List, Optional


class MaintenanceError(Exception):
    """Erreur de base de la maintenance."""


class NotFoundError(MaintenanceError):
    entity = "Item"

    def __init__(self, entity_id: Any):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class RuleNotFoundError(NotFoundError):
    entity = "Rule"


class ScanNotFoundError(NotFoundError):
    entity = "Scan"


class CandidateNotFoundError(NotFoundError):
    entity = "Candidate"


class ConflictError(MaintenanceError):
    """Action refusée dans l'état courant."""


class InvalidTransitionError(ConflictError):
    def __init__(self, candidate_id: int, current_status: str, action: str):
        self.candidate_id = candidate_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} candidate {candidate_id}: status is {current_status}, expected PENDING"
        )


class ScanAlreadyRunningError(ConflictError):
    def __init__(self, rule_id: int, scan_id: Optional[int] = None):
        self.rule_id = rule_id
        self.scan_id = scan_id
        suffix = f" (scan {scan_id})" if scan_id is not None else ""
        super().__init__(f"Rule {rule_id} already has a scan in progress{suffix}")


class RuleDisabledError(ConflictError):
    def __init__(self, rule_id: int):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} is disabled")


class RuleValidationError(MaintenanceError, ValueError):
    """Définition de règle invalide (nom, planification, critères)."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        self.errors = errors or []
        super().__init__(message)


class CriteriaValidationError(RuleValidationError):
    """Critères mal formés, refusés avant tout enregistrement."""


class ScanDeadlineExceeded(MaintenanceError):
    def __init__(self, scan_id: int, deadline_seconds: float):
        self.scan_id = scan_id
        super().__init__(f"Scan {scan_id} exceeded its deadline of {deadline_seconds:g}s")


class ExternalServiceError(MaintenanceError):
    """Réponse non-2xx (hors 404) de Radarr/Sonarr."""

    def __init__(self, service: str, status_code: Optional[int], text: str):
        self.service = service
        self.status_code = status_code
        self.text = text
        if status_code is None:
            super().__init__(f"{service}: {text}")
        else:
            super().__init__(f"{service} returned HTTP {status_code}: {text}")


class CatalogError(MaintenanceError):
    """Catalogue illisible; le scan est abandonné."""


class UnresolvedTargetError(MaintenanceError):
    """Candidat sans correspondance Radarr/Sonarr."""
