from .tenancy import Organization, Tenant, Lease, LeaseCharge
from .connect import ConnectedAccount, ProcessorEvent
from .payment_methods import ProcessorCustomer, PaymentMethod
from .transactions import PaymentTransaction, TransactionCharge
from .autopay import AutoPaySchedule
from .disputes import Dispute

__all__ = [
    'Organization', 'Tenant', 'Lease', 'LeaseCharge',
    'ConnectedAccount', 'ProcessorEvent',
    'ProcessorCustomer', 'PaymentMethod',
    'PaymentTransaction', 'TransactionCharge',
    'AutoPaySchedule',
    'Dispute',
]
