# API v1 Package
from backoffice.api.v1 import auth, agencies, cards, cash, expenses, exchange, notifications

__all__ = [
    'auth',
    'agencies',
    'cards',
    'cash',
    'expenses',
    'exchange',
    'notifications',
]
