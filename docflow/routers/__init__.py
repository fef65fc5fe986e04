from . import directory, metrics, notifications, permissions, sla, templates, workflows

__all__ = ["directory", "metrics", "notifications", "permissions", "sla", "templates", "workflows"]
