"""Settlement program client: moves reward funds for recorded claims"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import requests

from raid_engine.config import settings
from raid_engine.errors import SettlementUnavailable
from raid_engine.utils.json_encoder import json_dumps

logger = logging.getLogger(__name__)

def settlement_idempotency_key(raid_id: int, participant_id: str) -> str:
    """One key per claim so retried payouts are never doubled."""
    return f"raid-{raid_id}-participant-{participant_id}"

class SettlementProgram(ABC):
    """External program that transfers reward value"""

    @abstractmethod
    def settle(self, participant_id: str, raid_id: int, amount: float,
               token_mint: str = 'SOL') -> str:
        """
        Transfer amount to the participant.

        Returns:
            Settlement reference (e.g. transaction signature)

        Raises:
            SettlementUnavailable: If funds could not be moved
        """

class HttpSettlementClient(SettlementProgram):
    """Calls the escrow service that fronts the on-chain settlement program"""

    def __init__(self, base_url: str = settings.SETTLEMENT_API_URL,
                 api_key: Optional[str] = settings.SETTLEMENT_API_KEY,
                 timeout: float = settings.SETTLEMENT_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        })
        if api_key:
            self.session.headers.update({'Authorization': f'Bearer {api_key}'})

    def settle(self, participant_id: str, raid_id: int, amount: float,
               token_mint: str = 'SOL') -> str:
        url = f'{self.base_url}/settlements'
        payload = {
            'participant_id': participant_id,
            'raid_id': raid_id,
            'amount': amount,
            'token_mint': token_mint
        }
        headers = {'Idempotency-Key': settlement_idempotency_key(raid_id, participant_id)}
        try:
            response = self.session.post(url, data=json_dumps(payload), headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            logger.error(f"Settlement rejected for {participant_id} in raid {raid_id}: {e}")
            raise SettlementUnavailable(f"Settlement service returned {e.response.status_code}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Settlement request failed for {participant_id} in raid {raid_id}: {e}")
            raise SettlementUnavailable(f"Settlement service unreachable: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise SettlementUnavailable(f"Invalid settlement response: {response.text[:200]}") from e

        reference = (data.get('reference') or data.get('signature')) if isinstance(data, dict) else None
        if not reference:
            raise SettlementUnavailable(f"Settlement response carried no reference: {data}")
        logger.info(f"Settled {amount} {token_mint} to {participant_id} for raid {raid_id}: {reference}")
        return str(reference)
