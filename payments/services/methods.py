"""
Payment methods offered at checkout, with limits in minor units (COP cents),
and the gateways that can take each one in priority order.
"""
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from payments.models import PaymentMethod


class MethodInfo:
    def __init__(
        self,
        method: PaymentMethod,
        name: str,
        description: str,
        min_amount: int,
        max_amount: int,
        fee_percentage: float,
        fee_fixed: int,
        processing_time: str = "Inmediato",
        enabled: bool = True,
        gateways: Tuple[str, ...] = ("wompi",),
    ):
        self.method = method
        self.name = name
        self.description = description
        self.min_amount = min_amount
        self.max_amount = max_amount
        self.fee_percentage = fee_percentage
        self.fee_fixed = fee_fixed
        self.processing_time = processing_time
        self.enabled = enabled
        self.gateways = gateways

    def accepts(self, amount: int) -> bool:
        return self.min_amount <= amount <= self.max_amount

    def fee_for(self, amount: int) -> int:
        return int(round(amount * self.fee_percentage / 100)) + self.fee_fixed


METHOD_CATALOG: Dict[PaymentMethod, MethodInfo] = {
    PaymentMethod.CARD: MethodInfo(
        PaymentMethod.CARD,
        name="Tarjeta de Crédito/Débito",
        description="Visa, Mastercard, American Express",
        min_amount=100_000,
        max_amount=2_000_000_000,
        fee_percentage=2.99,
        fee_fixed=90_000,
        gateways=("wompi",),
    ),
    PaymentMethod.PSE: MethodInfo(
        PaymentMethod.PSE,
        name="PSE",
        description="Paga desde tu cuenta bancaria",
        min_amount=100_000,
        max_amount=5_000_000_000,
        fee_percentage=2.59,
        fee_fixed=90_000,
        gateways=("wompi",),
    ),
    PaymentMethod.WALLET: MethodInfo(
        PaymentMethod.WALLET,
        name="Nequi",
        description="Paga con tu Nequi",
        min_amount=100_000,
        max_amount=400_000_000,
        fee_percentage=2.59,
        fee_fixed=90_000,
        gateways=("wompi",),
    ),
    PaymentMethod.BANK_TRANSFER: MethodInfo(
        PaymentMethod.BANK_TRANSFER,
        name="Transferencia Bancolombia",
        description="Transferencia desde Bancolombia",
        min_amount=100_000,
        max_amount=5_000_000_000,
        fee_percentage=2.59,
        fee_fixed=90_000,
        gateways=("wompi",),
    ),
}


def get_method(method: PaymentMethod) -> Optional[MethodInfo]:
    return METHOD_CATALOG.get(PaymentMethod(method))


def list_methods(amount: Optional[int] = None) -> List[MethodInfo]:
    """Enabled methods; with an amount, only those whose limits accept it."""
    methods = [info for info in METHOD_CATALOG.values() if info.enabled]
    if amount is not None:
        methods = [info for info in methods if info.accepts(amount)]
    return methods


def route_gateway(
    method: PaymentMethod,
    available: Iterable[str],
    routes: Optional[Dict[str, Sequence[str]]] = None,
) -> Optional[str]:
    """
    First gateway, by priority, that takes `method` and has a client.
    `routes` (method name -> gateway names) overrides the catalog order.
    None when no configured gateway takes the method.
    """
    method = PaymentMethod(method)
    candidates = (routes or {}).get(method.value)
    if not candidates:
        info = get_method(method)
        candidates = info.gateways if info else ()
    available = set(available)
    for name in candidates:
        if name in available:
            return name
    return None
