"""Plan validation and console reporting."""

from stageload.validation.core import ValidationResult, ValidationRunner
from stageload.validation.reporter import ConsoleReporter

__all__ = ["ConsoleReporter", "ValidationResult", "ValidationRunner"]
