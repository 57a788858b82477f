"""
services/quote_calculator.py
Calcul des montants d'un devis : valorisation ligne par ligne puis agrégation

Ordre imposé :
  remise ligne -> somme des bases -> remise globale -> taxe globale -> total

Fonctions pures en Decimal, sans arrondi interne ni état caché.
Les entrées sont supposées validées en amont (assistant / API).
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List

from services.quote_models import (
    LineItem,
    LineItemValuation,
    QuoteCalculations,
    QuoteDraft,
    ZERO,
)


HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def valuate(item: LineItem) -> LineItemValuation:
    """
    Valorise une ligne.

    La remise est appliquée avant la taxe : la taxe porte sur le montant
    remisé, jamais sur le brut.
    """
    subtotal = item.quantity * item.unit_price
    discount = subtotal * item.discount_percent / HUNDRED
    taxable_base = subtotal - discount
    tax = taxable_base * item.tax_rate / HUNDRED

    return LineItemValuation(
        subtotal=subtotal,
        discount=discount,
        taxable_base=taxable_base,
        tax=tax,
        total=taxable_base + tax,
    )


def aggregate(
    items: Iterable[LineItem],
    global_discount: Decimal = ZERO,
    global_tax_rate_percent: Decimal = ZERO
) -> QuoteCalculations:
    """
    Agrège les lignes d'un devis.

    - subtotal : somme des bases taxables (après remise ligne, avant taxe ligne)
    - discount_total : remise globale en montant, soustraite une seule fois
    - tax_total : taux global appliqué au montant après remise globale

    Les taux de taxe par ligne n'entrent pas dans l'agrégat. Aucun plancher
    n'est appliqué : une remise globale supérieure au sous-total donne un
    montant taxable négatif.
    """
    items = list(items)
    if not items:
        return QuoteCalculations()

    subtotal = sum((valuate(item).taxable_base for item in items), ZERO)
    discount_total = Decimal(global_discount)
    taxable_amount = subtotal - discount_total
    tax_total = taxable_amount * Decimal(global_tax_rate_percent) / HUNDRED

    return QuoteCalculations(
        subtotal=subtotal,
        discount_total=discount_total,
        taxable_amount=taxable_amount,
        tax_total=tax_total,
        total=taxable_amount + tax_total,
    )


def calculate_draft(draft: QuoteDraft) -> QuoteCalculations:
    """Totaux d'un brouillon, recalculés à chaque appel"""
    return aggregate(draft.line_items, draft.discount_total, draft.tax_rate)


def valuate_lines(items: Iterable[LineItem]) -> List[LineItemValuation]:
    return [valuate(item) for item in items]


def round_money(value: Decimal) -> Decimal:
    """Arrondi monétaire (2 décimales, demi supérieur) pour affichage/stockage"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def rounded(calculations: QuoteCalculations) -> QuoteCalculations:
    """Copie arrondie des totaux ; le calcul source reste exact"""
    return QuoteCalculations(
        subtotal=round_money(calculations.subtotal),
        discount_total=round_money(calculations.discount_total),
        taxable_amount=round_money(calculations.taxable_amount),
        tax_total=round_money(calculations.tax_total),
        total=round_money(calculations.total),
    )
