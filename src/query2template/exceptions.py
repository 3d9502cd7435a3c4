"""
Custom exceptions for query2template package
"""

from typing import Any, Optional


class Query2TemplateError(Exception):
    """Base exception for query2template package"""
    pass


class ConfigurationError(Query2TemplateError):
    """Exception raised when configuration is invalid"""
    pass


class ProviderResponseError(Query2TemplateError):
    """Exception raised when an AI provider returns an unusable response"""
    pass


class TemplateServiceError(Query2TemplateError):
    """Operational failure in the template lifecycle, carrying an HTTP-style status"""

    def __init__(self, message: str, status: int = 500, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details


class TemplateNotFoundError(TemplateServiceError):
    def __init__(self, template_id: Any):
        super().__init__(f"Template {template_id} not found", status=404)
        self.template_id = template_id


class TemplateStateError(TemplateServiceError):
    """Raised for a status transition the lifecycle does not allow"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message, status=409, details={"status": current_status})
        self.current_status = current_status


class TemplateConflictError(TemplateServiceError):
    """Raised when an active template with the same (name, intent) already exists"""

    def __init__(self, name: str, intent: str):
        super().__init__(
            f"An active template named '{name}' with intent '{intent}' already exists",
            status=409,
            details={"name": name, "intent": intent},
        )


class TemplateValidationError(TemplateServiceError):
    """Raised at a persistence boundary when a template fails validation"""

    def __init__(self, message: str, validation: Any):
        super().__init__(message, status=400, details=validation)
        self.validation = validation


class FunnelConflictError(Query2TemplateError):
    """Raised when another request already created the active funnel for a question"""
    pass
