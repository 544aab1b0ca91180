"""
Application layer services for VenueBook.

This module contains the business logic layer that coordinates between
the infrastructure layer (clients) and the domain layer (models).
"""

from .book_manager import BookManager
from .book_store import BookStore
from .simulation_engine import SimulationEngine
from .symbol_cache import SymbolCache

__all__ = ["BookManager", "BookStore", "SimulationEngine", "SymbolCache"]
