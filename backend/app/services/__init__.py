"""Services package"""
from app.services.auth import AuthService
from app.services.workflow import WorkflowFacade

__all__ = ["AuthService", "WorkflowFacade"]
