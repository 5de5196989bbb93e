from .base import VenueClient
from .deribit import DeribitClient

__all__ = ["VenueClient", "DeribitClient"]
