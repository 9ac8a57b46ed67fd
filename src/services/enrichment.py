"""
Attach coordinates to items that arrived without an embedded geo tag.
"""

from __future__ import annotations

import logging

from src.services.geocoding import NominatimGeocoder
from src.services.location_extraction import LocationExtractor
from src.services.models import Item

LOGGER = logging.getLogger(__name__)


class ItemEnricher:
    def __init__(self, extractor: LocationExtractor, geocoder: NominatimGeocoder) -> None:
        self.extractor = extractor
        self.geocoder = geocoder

    def enrich(self, item: Item) -> bool:
        """Geocode ``item`` in place from its title/description; True when coordinates were set."""
        if item.geocoded:
            return False
        place = self.extractor.extract_from_item(item.title, item.description)
        if not place:
            LOGGER.debug("No location candidate in '%s'", item.title)
            return False
        result = self.geocoder.geocode(place)
        if result is None:
            return False
        item.set_coordinates(result.latitude, result.longitude, result.location)
        return True
