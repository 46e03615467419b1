"""
Employee Directory Module

The employee directory lives in the HR subsystem; the loan engine only asks
whether an employee exists before accepting a loan request.
"""

from abc import ABC, abstractmethod
from typing import Iterable, Optional
import threading


class EmployeeDirectory(ABC):
    """Lookup interface onto the HR employee directory"""

    @abstractmethod
    def employee_exists(self, employee_id: str) -> bool:
        """Check if an employee exists and is on payroll"""
        pass


class InMemoryEmployeeDirectory(EmployeeDirectory):
    """Employee directory backed by a set of ids (testing, embedding)"""

    def __init__(self, employee_ids: Optional[Iterable[str]] = None):
        self._employee_ids = set(employee_ids or ())
        self._lock = threading.Lock()

    def register(self, employee_id: str) -> None:
        with self._lock:
            self._employee_ids.add(employee_id)

    def remove(self, employee_id: str) -> None:
        with self._lock:
            self._employee_ids.discard(employee_id)

    def employee_exists(self, employee_id: str) -> bool:
        with self._lock:
            return employee_id in self._employee_ids
