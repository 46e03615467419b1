"""
Shared API dependencies
"""

import threading
from typing import Optional

from ..engine import LoanEngine


# Global loan engine instance, built from configuration on first use
_loan_engine: Optional[LoanEngine] = None
_engine_lock = threading.Lock()


def get_loan_engine() -> LoanEngine:
    global _loan_engine
    with _engine_lock:
        if _loan_engine is None:
            _loan_engine = LoanEngine.from_config()
        return _loan_engine


def set_loan_engine(engine: Optional[LoanEngine]) -> None:
    """Replace the global engine (embedding, tests)"""
    global _loan_engine
    with _engine_lock:
        _loan_engine = engine
