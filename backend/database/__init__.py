from .connection import (
    Base, get_db, init_db, init_engine, get_engine, get_session_factory, dispose_engine
)

# Import bank feed models to ensure they are registered with Base
from .bank_feed_models import BankAccountDB, BankFeedLineDB, BankMatchDB

__all__ = [
    'Base', 'get_db', 'init_db', 'init_engine', 'get_engine', 'get_session_factory', 'dispose_engine',
    # Bank feed models
    'BankAccountDB', 'BankFeedLineDB', 'BankMatchDB',
]
