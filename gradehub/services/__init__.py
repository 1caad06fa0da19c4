"""服务层包"""
from gradehub.services.audit_service import AuditService
from gradehub.services.file_service import FileService
from gradehub.services.intake_service import IntakeService
from gradehub.services.identity_service import IdentityService
from gradehub.services.claim_service import ClaimService
from gradehub.services.grading_service import GradingService
from gradehub.services.analysis_service import AnalysisService

__all__ = ['AuditService', 'FileService', 'IntakeService', 'IdentityService', 'ClaimService',
           'GradingService', 'AnalysisService']
