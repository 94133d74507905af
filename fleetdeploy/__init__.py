"""fleetdeploy - fleet deployment orchestrator for the todo application"""

__version__ = "1.0.0"
