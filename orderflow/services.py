"""
Wires the core components around one store and one provider client.
"""
from dataclasses import dataclass

from orderflow.assignments import AssignmentRegistry
from orderflow.orders import Enqueue, OrderService
from orderflow.provider_client import ProviderClient
from orderflow.reconciliation import ReconciliationEngine
from orderflow.store import OrderStore
from orderflow.transitions import TransitionAuthority


@dataclass
class Services:
    store: OrderStore
    provider: ProviderClient
    authority: TransitionAuthority
    assignments: AssignmentRegistry
    engine: ReconciliationEngine
    orders: OrderService


def build_services(
    store: OrderStore,
    provider: ProviderClient,
    enqueue: Enqueue,
    provider_timeout: float,
) -> Services:
    authority = TransitionAuthority(store)
    return Services(
        store=store,
        provider=provider,
        authority=authority,
        assignments=AssignmentRegistry(store),
        engine=ReconciliationEngine(store, provider, authority, provider_timeout),
        orders=OrderService(store, authority, provider, enqueue),
    )
