from backend.models.user import User, UserRole, UserStatus
from backend.models.branch import Branch, BranchStatus
from backend.models.bck import BCK, BCKStatus
from backend.models.supplier import Supplier, SupplierStatus, SupplierType, RiskLevel
from backend.models.template import AuditTemplate, TemplateStatus
from backend.models.audit import Audit, AuditResult, AuditStatus, PassFail
from backend.models.finding import Finding, FindingSeverity, FindingStatus
from backend.models.capa import CAPA, CAPAActivity, CAPAStatus, CAPAPriority
from backend.models.incident import Incident, IncidentSeverity, IncidentStatus
from backend.models.health_score import HealthScore
from backend.models.notification import Notification

__all__ = [
    "User",
    "UserRole",
    "UserStatus",
    "Branch",
    "BranchStatus",
    "BCK",
    "BCKStatus",
    "Supplier",
    "SupplierStatus",
    "SupplierType",
    "RiskLevel",
    "AuditTemplate",
    "TemplateStatus",
    "Audit",
    "AuditResult",
    "AuditStatus",
    "PassFail",
    "Finding",
    "FindingSeverity",
    "FindingStatus",
    "CAPA",
    "CAPAActivity",
    "CAPAStatus",
    "CAPAPriority",
    "Incident",
    "IncidentSeverity",
    "IncidentStatus",
    "HealthScore",
    "Notification",
]
