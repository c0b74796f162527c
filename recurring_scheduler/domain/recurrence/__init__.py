"""
Recurrence Domain

Pure pattern handling: compiling user patterns into canonical RFC 5545 rules
and expanding rules into concrete occurrence instants. Nothing here touches
storage or reads the clock except compile_pattern's default "now".
"""

from .compiler import CompiledPattern, compile_pattern
from .expander import expand, local_date, next_occurrence, occurs_on
from .rule import Frequency, RecurrenceRule
from .schemas import RecurrencePattern

__all__ = [
    "CompiledPattern",
    "Frequency",
    "RecurrencePattern",
    "RecurrenceRule",
    "compile_pattern",
    "expand",
    "local_date",
    "next_occurrence",
    "occurs_on",
]
