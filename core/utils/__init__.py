# core/utils/__init__.py

# Utils package

# Money helpers
from core.utils.money import (
    FeeBreakdown,
    compute_fee_breakdown,
    from_minor_units,
    to_minor_units,
)

# IBAN helpers
from core.utils.iban import (
    clean_iban,
    validate_iban,
)

__all__ = [
    # Money
    'FeeBreakdown',
    'compute_fee_breakdown',
    'from_minor_units',
    'to_minor_units',
    # IBAN
    'clean_iban',
    'validate_iban',
]
