"""Service modules - Business logic layer"""
from .definition_service import DefinitionService
from .assignment_service import AssignmentService
from .reporting_service import ReportingService
from .role_service import RoleService, HttpRoleService, StaticRoleService

__all__ = [
    "DefinitionService",
    "AssignmentService",
    "ReportingService",
    "RoleService",
    "HttpRoleService",
    "StaticRoleService",
]
