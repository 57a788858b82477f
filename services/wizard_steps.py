"""
services/wizard_steps.py
Table déclarative des étapes de l'assistant de devis et de leurs validateurs

Chaque étape est un enregistrement (étape, libellé, description, validateur).
Le moteur parcourt cette table dans l'ordre ; ajouter une étape ne demande
aucune modification du moteur.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from services.quote_models import QuoteDraft, WizardStep, ZERO
from services.quote_calculator import HUNDRED


ValidationErrors = Dict[str, Tuple[str, ...]]
StepValidator = Callable[[QuoteDraft], ValidationErrors]

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s\-\+\(\)\.]+$")


def validate_customer_info(draft: QuoteDraft) -> ValidationErrors:
    """Nom et email obligatoires, téléphone contrôlé s'il est fourni"""
    errors: ValidationErrors = {}
    customer = draft.customer

    name = customer.name.strip()
    if not name:
        errors["name"] = ("Le nom du client est obligatoire",)
    elif len(name) < 2:
        errors["name"] = ("Le nom doit contenir au moins 2 caractères",)

    email = customer.email.strip()
    if not email:
        errors["email"] = ("L'email est obligatoire",)
    elif not EMAIL_PATTERN.match(email):
        errors["email"] = ("Format d'email invalide",)

    if customer.phone and not PHONE_PATTERN.match(customer.phone):
        errors["phone"] = ("Format de téléphone invalide",)

    return errors


def validate_line_items(draft: QuoteDraft) -> ValidationErrors:
    """Au moins une ligne ; chaque ligne nommée, quantité > 0, prix >= 0"""
    errors: ValidationErrors = {}

    if not draft.line_items:
        errors["line_items"] = ("Au moins une ligne est requise",)
        return errors

    for index, item in enumerate(draft.line_items):
        prefix = f"line_items[{index}]"

        if not item.name.strip():
            errors[f"{prefix}.name"] = ("La désignation est obligatoire",)
        if item.quantity <= 0:
            errors[f"{prefix}.quantity"] = ("La quantité doit être supérieure à 0",)
        if item.unit_price < ZERO:
            errors[f"{prefix}.unit_price"] = ("Le prix unitaire ne peut pas être négatif",)
        if not ZERO <= item.discount_percent <= HUNDRED:
            errors[f"{prefix}.discount_percent"] = ("La remise doit être comprise entre 0 et 100",)
        if not ZERO <= item.tax_rate <= HUNDRED:
            errors[f"{prefix}.tax_rate"] = ("Le taux de taxe doit être compris entre 0 et 100",)

    if draft.discount_total < ZERO:
        errors["discount_total"] = ("La remise globale ne peut pas être négative",)
    if draft.tax_rate < ZERO:
        errors["tax_rate"] = ("Le taux de taxe global ne peut pas être négatif",)

    return errors


def always_valid(draft: QuoteDraft) -> ValidationErrors:
    return {}


@dataclass(frozen=True)
class StepDefinition:
    """Étape de l'assistant"""
    step: WizardStep
    label: str
    description: str
    validator: StepValidator = always_valid


WIZARD_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition(WizardStep.CUSTOMER_INFO, "Customer", "Customer information", validate_customer_info),
    StepDefinition(WizardStep.PRODUCT_SELECTION, "Products", "Select products"),
    StepDefinition(WizardStep.LINE_ITEMS, "Line Items", "Configure items", validate_line_items),
    StepDefinition(WizardStep.TERMS_NOTES, "Terms", "Terms & notes"),
    StepDefinition(WizardStep.REVIEW_SEND, "Review", "Review & send"),
)


def step_index(step: WizardStep, steps: Tuple[StepDefinition, ...] = WIZARD_STEPS) -> Optional[int]:
    for index, definition in enumerate(steps):
        if definition.step == step:
            return index
    return None


def validate_step(
    step: WizardStep,
    draft: QuoteDraft,
    steps: Tuple[StepDefinition, ...] = WIZARD_STEPS
) -> ValidationErrors:
    index = step_index(step, steps)
    if index is None:
        return {}
    return steps[index].validator(draft)


def validate_all(draft: QuoteDraft, steps: Tuple[StepDefinition, ...] = WIZARD_STEPS) -> ValidationErrors:
    """Toutes les règles de toutes les étapes (contrôle avant soumission)"""
    errors: ValidationErrors = {}
    for definition in steps:
        errors.update(definition.validator(draft))
    return errors


def step_ids(steps: Tuple[StepDefinition, ...] = WIZARD_STEPS) -> List[WizardStep]:
    return [definition.step for definition in steps]
