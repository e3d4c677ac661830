from typing import List
import logging
import re

import aiohttp

from .targets import InputError

logger = logging.getLogger(__name__)

# Host part of every absolute http(s) link in a page.
LINK_PATTERN = re.compile(r'(?:http|https)://(.*?)[/"<>\s]+')

def extract_domains(text: str) -> List[str]:
    """
    Host names of all http(s) links in `text`, deduplicated in order of first appearance.
    """
    return list(dict.fromkeys(LINK_PATTERN.findall(text)))

async def fetch_domains(url: str, timeout: float = 30) -> List[str]:
    """
    Downloads a page, e.g. a mirror list, and returns the domains it links to.
    Raises InputError if the page can't be fetched.
    """
    logger.info(f'Fetching {url}')
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url, allow_redirects=True) as response:
                response.raise_for_status()
                text = await response.text(errors='replace')
    except (aiohttp.ClientError, TimeoutError) as e:
        raise InputError(f'Could not fetch {url}: {e}') from e

    domains = extract_domains(text)
    logger.info(f'Parsed {len(domains)} domains from {url}')
    return domains
