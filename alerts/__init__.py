"""Alert model and evaluation helpers."""

from .models import Alert, AlertKind, InvalidAlertError, NewAlert, validate_new_alert

__all__ = ["Alert", "AlertKind", "InvalidAlertError", "NewAlert", "validate_new_alert"]
