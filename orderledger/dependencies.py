"""
Service wiring.

All ledger services share one ResilientStore and the process-wide count cache.
The container is built once at startup and kept on `app.state.services`.
"""

from dataclasses import dataclass

from fastapi import Request

from orderledger.core.cache import TaggedTTLCache, count_cache
from orderledger.core.config import AppConfig
from orderledger.core.exceptions import ConfigurationError
from orderledger.services.collaborators import AccountLedger, ExpiryScheduler, SettlementJournal
from orderledger.services.enumeration_service import EnumerationService
from orderledger.services.expiry_service import ExpirySweep
from orderledger.services.ledger import TransactionLedger
from orderledger.services.order_service import OrderService
from orderledger.services.payment_service import PaymentService
from orderledger.services.status_service import StatusTransitionController
from orderledger.services.store import ResilientStore


@dataclass
class LedgerServices:
    store: ResilientStore
    ledger: TransactionLedger
    accounts: AccountLedger
    scheduler: ExpiryScheduler
    orders: OrderService
    transitions: StatusTransitionController
    journal: SettlementJournal
    payments: PaymentService
    sweep: ExpirySweep
    enumeration: EnumerationService


def build_services(database, config: AppConfig, cache: TaggedTTLCache = count_cache) -> LedgerServices:
    ledger_config = config.ledger

    store = ResilientStore(
        database,
        attempts=ledger_config.store_retry_attempts,
        base_delay=ledger_config.store_retry_base_delay_ms / 1000,
        max_delay=ledger_config.store_retry_max_delay_ms / 1000,
    )
    ledger = TransactionLedger(store, cache)
    accounts = AccountLedger(store)
    scheduler = ExpiryScheduler(store, ledger_config.payment_window_seconds)
    transitions = StatusTransitionController(ledger, accounts, scheduler)
    journal = SettlementJournal(store)

    return LedgerServices(
        store=store,
        ledger=ledger,
        accounts=accounts,
        scheduler=scheduler,
        orders=OrderService(ledger, accounts, scheduler),
        transitions=transitions,
        journal=journal,
        payments=PaymentService(ledger, transitions, journal),
        sweep=ExpirySweep(
            store,
            transitions,
            payment_window_seconds=ledger_config.payment_window_seconds,
            batch_limit=ledger_config.expiry_batch_limit,
            sub_batch_size=ledger_config.expiry_sub_batch_size,
            pause_seconds=ledger_config.expiry_pause_ms / 1000,
        ),
        enumeration=EnumerationService(store, config.enumeration, cache),
    )


def get_services(request: Request) -> LedgerServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError("Ledger services are not initialized", config_key="app.state.services")
    return services
