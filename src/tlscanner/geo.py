from pathlib import Path
from typing import Iterable, Optional
import logging

import geoip2.database
import geoip2.errors
import maxminddb

from .addresses import ip_version

logger = logging.getLogger(__name__)

# Places to look for a country database, in order.
DEFAULT_DATABASE_PATHS = (
    'GeoLite2-Country.mmdb',
    'Country.mmdb',
    './public/Country.mmdb',
)

DATABASE_URL = 'https://github.com/Loyalsoldier/geoip/releases/latest/download/Country.mmdb'

# Country code reported when no database is loaded or the address is unknown.
UNKNOWN_COUNTRY = 'N/A'

class GeoLookup:
    """
    Maps IP addresses to ISO country codes using a MaxMind country database.
    Without a database every lookup returns 'N/A', lookups never raise.
    """
    def __init__(self, reader: Optional[geoip2.database.Reader] = None):
        self.reader = reader

    @classmethod
    def open(cls, paths: Iterable[str] = DEFAULT_DATABASE_PATHS) -> 'GeoLookup':
        """
        Loads the first readable database from `paths`. Missing databases are not an error.
        """
        tried = []
        for path in paths:
            if not path:
                continue
            tried.append(path)
            if not Path(path).is_file():
                continue
            try:
                reader = geoip2.database.Reader(path)
            except (OSError, ValueError, maxminddb.InvalidDatabaseError) as e:
                logger.debug(f'Could not open GeoIP database {path}: {e!r}')
                continue
            logger.info(f'Enabled GeoIP from {path}')
            return cls(reader)

        logger.warning(f'Cannot find any GeoIP database file. Tried: {", ".join(tried)}')
        logger.info(f'Download Country.mmdb from {DATABASE_URL} to enable country codes')
        return cls()

    @property
    def available(self) -> bool:
        return self.reader is not None

    def country(self, address: str) -> str:
        """
        ISO country code for `address`, or 'N/A'.
        """
        if self.reader is None or not ip_version(address):
            return UNKNOWN_COUNTRY
        try:
            response = self.reader.country(address)
        except (geoip2.errors.AddressNotFoundError, ValueError) as e:
            logger.debug(f'No country for {address}: {e!r}')
            return UNKNOWN_COUNTRY
        return response.country.iso_code or UNKNOWN_COUNTRY

    def close(self) -> None:
        if self.reader is not None:
            self.reader.close()
            self.reader = None
