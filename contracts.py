"""
Marketplace collaborators consumed by the escrow ledger.

The contract service supplies contract data at escrow creation and receives
status/milestone updates; the user directory supplies the profile fields the
commission engine's eligibility conditions look at.

Two implementations are provided:
    - MarketplaceClient: the marketplace backend's REST API over requests
    - InMemoryMarketplace: a registry for single-process runs and tests
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import requests

from commission_engine import UserProfile
from escrow_errors import EscrowError, NotFoundError
from escrow_models import Contract, ContractStatus, parse_datetime
from payment_gateway import get_session_with_retry
from utils import to_decimal

logger = logging.getLogger(__name__)


class ContractService(ABC):
    """Contract collaborator interface."""

    @abstractmethod
    async def get_contract(self, contract_id: str) -> Contract:
        """
        Raises:
            NotFoundError: If the contract does not exist
        """

    @abstractmethod
    async def update_status(self, contract_id: str, status: ContractStatus) -> None:
        pass

    @abstractmethod
    async def mark_milestone_paid(self, contract_id: str, milestone_id: str) -> None:
        pass


class UserDirectory(ABC):
    """Profile collaborator interface."""

    @abstractmethod
    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        pass


class MarketplaceClient(ContractService, UserDirectory):
    """
    REST client for the marketplace backend.

    Blocking requests run in a worker thread so the event loop is never
    held up by the network.
    """

    def __init__(self, base_url: str, api_token: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url.rstrip('/')
        self.api_token = api_token
        self.timeout = timeout
        self.session = get_session_with_retry()

    def _call(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {}
        if self.api_token:
            headers['Authorization'] = f'Bearer {self.api_token}'
        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers=headers,
                timeout=self.timeout
            )
            if response.status_code == 404:
                raise NotFoundError(f"Marketplace resource not found: {path}")
            response.raise_for_status()
            return response.json() if response.content else {}
        except requests.exceptions.RequestException as e:
            logger.error(f"Marketplace request {method} {path} failed: {e}")
            raise EscrowError(f"Marketplace request failed: {e}") from e

    async def get_contract(self, contract_id: str) -> Contract:
        data = await asyncio.to_thread(self._call, 'GET', f'/contracts/{contract_id}')
        contract = data.get('contract', data)
        return Contract(
            contract_id=str(contract['id']),
            manager_id=str(contract['manager_id']),
            talent_id=str(contract['talent_id']),
            total_amount=contract['total_amount'],
            title=contract.get('title', ''),
            status=contract.get('status', ContractStatus.PENDING.value),
            currency=contract.get('currency', 'usd'),
            manager_email=contract.get('manager_email'),
            manager_name=contract.get('manager_name'),
            job_category=contract.get('job_category'),
        )

    async def update_status(self, contract_id: str, status: ContractStatus) -> None:
        await asyncio.to_thread(
            self._call, 'PATCH', f'/contracts/{contract_id}',
            {'status': ContractStatus(status).value}
        )
        logger.info(f"Contract {contract_id} marked {ContractStatus(status).value}")

    async def mark_milestone_paid(self, contract_id: str, milestone_id: str) -> None:
        await asyncio.to_thread(
            self._call, 'PATCH', f'/contracts/{contract_id}/milestones/{milestone_id}',
            {'status': 'paid'}
        )
        logger.info(f"Milestone {milestone_id} of contract {contract_id} marked paid")

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            data = await asyncio.to_thread(self._call, 'GET', f'/users/{user_id}')
        except NotFoundError:
            return None
        user = data.get('user', data)
        return UserProfile(
            user_id=str(user_id),
            rating=to_decimal(user.get('rating') or 0),
            created_at=parse_datetime(user.get('created_at')),
            is_premium=bool(user.get('is_premium', False)),
        )


class InMemoryMarketplace(ContractService, UserDirectory):
    """Contract and profile registry kept in process memory."""

    def __init__(self):
        self.contracts: Dict[str, Contract] = {}
        self.profiles: Dict[str, UserProfile] = {}
        self.status_updates: List[Tuple[str, str]] = []
        self.paid_milestones: List[Tuple[str, str]] = []

    def add_contract(self, contract: Contract) -> Contract:
        self.contracts[contract.contract_id] = contract
        return contract

    def add_profile(self, profile: UserProfile) -> UserProfile:
        self.profiles[profile.user_id] = profile
        return profile

    async def get_contract(self, contract_id: str) -> Contract:
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise NotFoundError(f"Contract not found: {contract_id}", {'contract_id': contract_id})
        return contract

    async def update_status(self, contract_id: str, status: ContractStatus) -> None:
        value = ContractStatus(status).value
        self.status_updates.append((contract_id, value))
        if contract_id in self.contracts:
            self.contracts[contract_id].status = value

    async def mark_milestone_paid(self, contract_id: str, milestone_id: str) -> None:
        self.paid_milestones.append((contract_id, milestone_id))

    async def get_user_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get(str(user_id))
