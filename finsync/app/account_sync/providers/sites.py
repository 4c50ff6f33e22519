"""
Bank site profiles for the browser adapter.

Each profile declares how to log in to one bank's website and where to read
the balance and statement rows. Profiles are loaded from the JSON file named
by BROWSER_SITES_FILE, for example:

    [
        {
            "company_id": "leumi",
            "display_name": "Bank Leumi",
            "login_url": "https://hb2.bankleumi.co.il/login",
            "fields": {"username": "#uid", "password": "#password"},
            "submit_selector": "button[type=submit]",
            "success_selector": "#dashboard",
            "otp_selector": "#otp-code",
            "login_error_selector": ".login-error",
            "statement_url": "https://hb2.bankleumi.co.il/transactions",
            "account_number_selector": ".account-number",
            "balance_selector": ".current-balance",
            "row_selector": "table.transactions tbody tr",
            "date_cell": "td.date",
            "description_cell": "td.description",
            "amount_cell": "td.amount",
            "date_format": "%d/%m/%Y",
            "currency": "ILS"
        }
    ]
"""

import json
import logging
from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class SiteProfile(BaseModel):
    company_id: str
    display_name: str
    login_url: str
    # credential key -> input selector
    fields: Dict[str, str]
    submit_selector: str
    success_selector: str
    otp_selector: Optional[str] = None
    login_error_selector: Optional[str] = None
    statement_url: Optional[str] = None
    account_number_selector: str
    balance_selector: Optional[str] = None
    row_selector: str
    date_cell: str
    description_cell: str
    amount_cell: str
    date_format: str = "%d/%m/%Y"
    currency: str = "ILS"


def parse_site_profiles(data) -> Dict[str, SiteProfile]:
    profiles = [SiteProfile.model_validate(item) for item in data]
    return {p.company_id: p for p in profiles}


@lru_cache()
def load_site_profiles(path: Optional[str]) -> Dict[str, SiteProfile]:
    """
    Load profiles from a JSON file, keyed by company_id.

    Returns an empty registry when no file is configured.
    """
    if not path:
        logger.warning("BROWSER_SITES_FILE not configured, no browser institutions available")
        return {}

    with open(path, 'r') as f:
        profiles = parse_site_profiles(json.load(f))

    logger.info(f"Loaded {len(profiles)} browser site profiles")
    return profiles
