"""
Financial Recorder

The producer side of the ledger: mutates live entities and appends the
event documenting each mutation in the same unit of work.

DESIGN DECISION: The event carries exactly the fields that were written
to the live table, in the shape the reducers read back. That is what lets
a replay to "now" reproduce the live tables, and it is why every write in
the system should go through here (or follow the same pattern).

Input validation lives here too. The engine downstream trusts the log.
"""

import math
from typing import Optional, Union

import structlog

from richflow.config import get_settings
from richflow.ledger.event_store import EventStore
from richflow.ledger.snapshots import SnapshotManager
from richflow.models.events import INCOME_STATEMENT_SUBTYPE, ActionType, EntityType, IncomeType
from richflow.models.metrics import IncomeQuadrant
from richflow.models.state import (
    BalanceEntry,
    Currency,
    ExpenseEntry,
    IncomeLineEntry,
    UserAccount,
)
from richflow.services.storage import (
    LedgerStorageInterface,
    LiveEntry,
    NotFoundError,
    UnitOfWork,
    UserNotFoundError,
)


logger = structlog.get_logger(__name__)


def _amount(value: float, field: str) -> float:
    amount = float(value)
    if not math.isfinite(amount):
        raise ValueError(f"{field} must be a finite number, got {value!r}")
    return amount


def _name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValueError("Name is required")
    return name


class FinancialRecorder:
    """
    Entity services for assets, liabilities, income, expenses, cash
    savings and the user's currency.

    Usage:
        recorder = FinancialRecorder(storage, event_store, snapshot_manager)
        user = await recorder.register_user("Ana")
        asset = await recorder.add_asset(user.id, "Brokerage account", 8000)
    """

    def __init__(
        self,
        storage: LedgerStorageInterface,
        event_store: EventStore,
        snapshot_manager: SnapshotManager,
    ):
        self._storage = storage
        self._events = event_store
        self._snapshots = snapshot_manager
        self._settings = get_settings().ledger

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def register_user(self, name: str, currency: Optional[Currency] = None) -> UserAccount:
        """
        Create an account with its genesis records.

        In one transaction: the user, the income statement container, a
        zero cash savings record, a USER CREATE audit event and the empty
        genesis snapshot.
        """
        currency = currency or Currency(
            symbol=self._settings.default_currency_symbol,
            name=self._settings.default_currency_name,
        )
        async with self._storage.unit_of_work() as uow:
            user = await uow.create_user(_name(name), currency)

            statement_id = await uow.next_entity_id()
            await self._events.log_income_event(
                ActionType.CREATE, user.id, statement_id, INCOME_STATEMENT_SUBTYPE,
                after_value={"id": statement_id, "userId": user.id},
                unit_of_work=uow,
            )

            cash_id = await uow.set_cash_savings(user.id, 0.0)
            await self._events.log_cash_savings_event(
                ActionType.CREATE, user.id, cash_id,
                after_value={"id": cash_id, "amount": 0.0},
                unit_of_work=uow,
            )

            await self._events.log_user_event(
                ActionType.CREATE, user.id,
                after_value={
                    "name": user.name,
                    "currencyCode": currency.symbol,
                    "currencyName": currency.name,
                },
                unit_of_work=uow,
            )

            await self._snapshots.create_genesis_snapshot(user, uow)

        logger.info("user_registered", user_id=user.id, currency=currency.symbol)
        return user

    async def change_currency(self, user_id: int, currency: Currency) -> UserAccount:
        """Switch the preferred currency. A no-op when it is unchanged."""
        async with self._storage.unit_of_work() as uow:
            user = await uow.get_user(user_id)
            if user is None:
                raise UserNotFoundError(f"User not found: {user_id}")
            if user.currency == currency:
                return user

            updated = await uow.set_user_currency(user_id, currency)
            await self._events.log_user_event(
                ActionType.UPDATE, user_id,
                before_value={
                    "currencyCode": user.currency.symbol,
                    "currencyName": user.currency.name,
                },
                after_value={
                    "currencyCode": currency.symbol,
                    "currencyName": currency.name,
                },
                unit_of_work=uow,
            )
        return updated

    # ------------------------------------------------------------------
    # Balance sheet
    # ------------------------------------------------------------------

    async def add_asset(self, user_id: int, name: str, value: float) -> BalanceEntry:
        async with self._storage.unit_of_work() as uow:
            entry = BalanceEntry(
                id=await uow.next_entity_id(),
                name=_name(name),
                value=_amount(value, "value"),
            )
            await self._create(uow, EntityType.ASSET, user_id, entry)
        return entry

    async def update_asset(
        self,
        user_id: int,
        asset_id: int,
        name: Optional[str] = None,
        value: Optional[float] = None,
    ) -> BalanceEntry:
        changes = self._balance_changes(name, value)
        async with self._storage.unit_of_work() as uow:
            return await self._update(uow, EntityType.ASSET, user_id, asset_id, changes)

    async def delete_asset(self, user_id: int, asset_id: int) -> None:
        async with self._storage.unit_of_work() as uow:
            await self._delete(uow, EntityType.ASSET, user_id, asset_id)

    async def add_liability(self, user_id: int, name: str, value: float) -> BalanceEntry:
        async with self._storage.unit_of_work() as uow:
            entry = BalanceEntry(
                id=await uow.next_entity_id(),
                name=_name(name),
                value=_amount(value, "value"),
            )
            await self._create(uow, EntityType.LIABILITY, user_id, entry)
        return entry

    async def update_liability(
        self,
        user_id: int,
        liability_id: int,
        name: Optional[str] = None,
        value: Optional[float] = None,
    ) -> BalanceEntry:
        changes = self._balance_changes(name, value)
        async with self._storage.unit_of_work() as uow:
            return await self._update(uow, EntityType.LIABILITY, user_id, liability_id, changes)

    async def delete_liability(self, user_id: int, liability_id: int) -> None:
        async with self._storage.unit_of_work() as uow:
            await self._delete(uow, EntityType.LIABILITY, user_id, liability_id)

    # ------------------------------------------------------------------
    # Income statement
    # ------------------------------------------------------------------

    async def add_income(
        self,
        user_id: int,
        name: str,
        amount: float,
        income_type: Union[IncomeType, str] = IncomeType.EARNED,
        quadrant: Optional[Union[IncomeQuadrant, str]] = None,
    ) -> IncomeLineEntry:
        async with self._storage.unit_of_work() as uow:
            entry = IncomeLineEntry(
                id=await uow.next_entity_id(),
                name=_name(name),
                amount=_amount(amount, "amount"),
                type=IncomeType(income_type).value,
                quadrant=IncomeQuadrant(quadrant).value if quadrant else None,
            )
            await self._create(uow, EntityType.INCOME, user_id, entry)
        return entry

    async def update_income(
        self,
        user_id: int,
        income_id: int,
        name: Optional[str] = None,
        amount: Optional[float] = None,
        income_type: Optional[Union[IncomeType, str]] = None,
        quadrant: Optional[Union[IncomeQuadrant, str]] = None,
    ) -> IncomeLineEntry:
        changes = {}
        if name is not None:
            changes["name"] = _name(name)
        if amount is not None:
            changes["amount"] = _amount(amount, "amount")
        if income_type is not None:
            changes["type"] = IncomeType(income_type).value
        if quadrant is not None:
            changes["quadrant"] = IncomeQuadrant(quadrant).value
        async with self._storage.unit_of_work() as uow:
            return await self._update(uow, EntityType.INCOME, user_id, income_id, changes)

    async def delete_income(self, user_id: int, income_id: int) -> None:
        async with self._storage.unit_of_work() as uow:
            await self._delete(uow, EntityType.INCOME, user_id, income_id)

    async def add_expense(self, user_id: int, name: str, amount: float) -> ExpenseEntry:
        async with self._storage.unit_of_work() as uow:
            entry = ExpenseEntry(
                id=await uow.next_entity_id(),
                name=_name(name),
                amount=_amount(amount, "amount"),
            )
            await self._create(uow, EntityType.EXPENSE, user_id, entry)
        return entry

    async def update_expense(
        self,
        user_id: int,
        expense_id: int,
        name: Optional[str] = None,
        amount: Optional[float] = None,
    ) -> ExpenseEntry:
        changes = {}
        if name is not None:
            changes["name"] = _name(name)
        if amount is not None:
            changes["amount"] = _amount(amount, "amount")
        async with self._storage.unit_of_work() as uow:
            return await self._update(uow, EntityType.EXPENSE, user_id, expense_id, changes)

    async def delete_expense(self, user_id: int, expense_id: int) -> None:
        async with self._storage.unit_of_work() as uow:
            await self._delete(uow, EntityType.EXPENSE, user_id, expense_id)

    # ------------------------------------------------------------------
    # Cash
    # ------------------------------------------------------------------

    async def set_cash_savings(self, user_id: int, amount: float) -> float:
        """Replace the user's cash savings balance."""
        amount = _amount(amount, "amount")
        async with self._storage.unit_of_work() as uow:
            existing = await uow.get_cash_savings(user_id)
            record_id = await uow.set_cash_savings(user_id, amount)
            await self._events.log_cash_savings_event(
                ActionType.UPDATE if existing else ActionType.CREATE,
                user_id,
                record_id,
                before_value={"id": record_id, "amount": existing[1]} if existing else None,
                after_value={"id": record_id, "amount": amount},
                unit_of_work=uow,
            )
        return amount

    # ------------------------------------------------------------------
    # Shared mutation paths
    # ------------------------------------------------------------------

    @staticmethod
    def _balance_changes(name: Optional[str], value: Optional[float]) -> dict:
        changes = {}
        if name is not None:
            changes["name"] = _name(name)
        if value is not None:
            changes["value"] = _amount(value, "value")
        return changes

    async def _put(self, uow: UnitOfWork, entity_type: EntityType, user_id: int, entry: LiveEntry) -> None:
        if entity_type == EntityType.ASSET:
            await uow.put_asset(user_id, entry)
        elif entity_type == EntityType.LIABILITY:
            await uow.put_liability(user_id, entry)
        elif entity_type == EntityType.INCOME:
            await uow.put_income_line(user_id, entry)
        else:
            await uow.put_expense(user_id, entry)

    @staticmethod
    def _subtype(entity_type: EntityType, entry: LiveEntry) -> Optional[str]:
        return entry.type if entity_type == EntityType.INCOME else None

    async def _create(
        self,
        uow: UnitOfWork,
        entity_type: EntityType,
        user_id: int,
        entry: LiveEntry,
    ) -> None:
        await self._put(uow, entity_type, user_id, entry)
        await self._events.append(
            ActionType.CREATE, entity_type, user_id, entry.id,
            entity_subtype=self._subtype(entity_type, entry),
            after_value=entry.model_dump(),
            unit_of_work=uow,
        )

    async def _update(
        self,
        uow: UnitOfWork,
        entity_type: EntityType,
        user_id: int,
        entity_id: int,
        changes: dict,
    ) -> LiveEntry:
        before = await uow.get_entity(user_id, entity_type.value, entity_id)
        if before is None:
            raise NotFoundError(f"{entity_type.value} not found: {entity_id}")
        after = before.model_copy(update=changes)
        await self._put(uow, entity_type, user_id, after)
        await self._events.append(
            ActionType.UPDATE, entity_type, user_id, entity_id,
            entity_subtype=self._subtype(entity_type, after),
            before_value=before.model_dump(),
            after_value=after.model_dump(),
            unit_of_work=uow,
        )
        return after

    async def _delete(
        self,
        uow: UnitOfWork,
        entity_type: EntityType,
        user_id: int,
        entity_id: int,
    ) -> None:
        before = await uow.get_entity(user_id, entity_type.value, entity_id)
        if before is None:
            raise NotFoundError(f"{entity_type.value} not found: {entity_id}")
        await uow.remove_entity(user_id, entity_type.value, entity_id)
        await self._events.append(
            ActionType.DELETE, entity_type, user_id, entity_id,
            entity_subtype=self._subtype(entity_type, before),
            before_value=before.model_dump(),
            unit_of_work=uow,
        )
