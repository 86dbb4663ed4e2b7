from decimal import Decimal, ROUND_HALF_UP

KG_PER_TON = Decimal(1000)


def _round_half_up(value):
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def tons_to_kg(tons):
    """Convert tons CO2e to integer kilograms (round half up)"""
    return _round_half_up(Decimal(str(tons)) * KG_PER_TON)


def kg_to_tons(kg):
    return float(Decimal(int(kg)) / KG_PER_TON)


def component_carbon_share(batch_carbon_kg, batch_quantity, declared_quantity):
    """Carbon attributed to `declared_quantity` units of a batch, in integer kg"""
    if not batch_quantity:
        return 0
    share = Decimal(int(batch_carbon_kg)) / Decimal(int(batch_quantity)) * Decimal(int(declared_quantity))
    return _round_half_up(share)


def batch_carbon_kg(carbon_per_unit_tons, quantity, component_shares_kg=()):
    """Total batch carbon: own production plus the shares of every consumed component"""
    own = tons_to_kg(Decimal(str(carbon_per_unit_tons)) * Decimal(int(quantity)))
    return own + sum(int(s) for s in component_shares_kg)


def format_tons(kg, places=3):
    return f"{kg_to_tons(kg):.{places}f}"
