"""Exception types raised at validation and API boundaries."""
from __future__ import annotations


class AlertGovError(Exception):
    """Base class for alertgov errors"""


class ConfigError(AlertGovError):
    """Invalid configuration value"""


class InvalidWeightsError(AlertGovError):
    """A weight vector with no usable mass (NaN, negative-only or all zero)"""


class AlertNotFoundError(AlertGovError):
    def __init__(self, alert_id: int | str):
        super().__init__(f"alert not found: {alert_id}")
        self.alert_id = alert_id
