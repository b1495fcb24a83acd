"""Default rejection reason codes offered to clients, per entity type."""

from typing import List, Optional

from approval_workflow.models.schemas import EntityType, RejectionAction
from approval_workflow.models.ui_rules_schemas import ReasonCodeOption


def _option(code: str, description: str, requires_remarks: bool = False, label: Optional[str] = None):
    return ReasonCodeOption(
        code=code,
        label=label or code.replace("_", " ").title(),
        description=description,
        requires_remarks=requires_remarks,
    )


COMMON_REASON_CODES = [
    _option("INCOMPLETE_INFORMATION", "Required information is missing", True),
    _option("INVALID_DATA", "Data provided is incorrect or invalid", True),
    _option("DUPLICATE_REQUEST", "This request already exists"),
    _option("POLICY_VIOLATION", "Violates company policy", True),
    _option("UNAUTHORIZED_REQUEST", "Requester not authorized"),
    _option("OTHER", "Other reason", True),
]

ENTITY_REASON_CODES = {
    EntityType.ORDER: [
        _option("ELIGIBILITY_EXHAUSTED", "Employee has no remaining eligibility"),
        _option("EMPLOYEE_NOT_ELIGIBLE", "Employee is not eligible for this order"),
        _option("INVALID_QUANTITY", "Quantity exceeds allowed limit"),
        _option("PRODUCT_UNAVAILABLE", "One or more products are not available"),
        _option("BUDGET_EXCEEDED", "Order exceeds budget limit"),
        _option("DELIVERY_ADDRESS_INVALID", "Delivery address is invalid or incomplete", True,
                label="Invalid Delivery Address"),
        _option("SIZE_MISMATCH", "Size information is missing or incorrect", True,
                label="Size Information Incorrect"),
    ],
    EntityType.GRN: [
        _option("QUANTITY_MISMATCH", "Delivered quantity does not match PO", True),
        _option("QUALITY_ISSUE", "Items do not meet quality standards", True),
        _option("DAMAGED_GOODS", "Items received are damaged", True),
        _option("WRONG_ITEMS", "Items delivered do not match order", True),
        _option("MISSING_DOCUMENTATION", "Required documents not provided"),
    ],
    EntityType.INVOICE: [
        _option("PRICING_DISCREPANCY", "Invoice prices do not match PO", True),
        _option("TAX_CALCULATION_ERROR", "Tax amount is incorrect", True),
        _option("PO_MISMATCH", "Invoice does not match PO", True, label="PO Mismatch"),
        _option("GRN_NOT_APPROVED", "GRN must be approved first", label="GRN Not Approved"),
        _option("AMOUNT_EXCEEDS_LIMIT", "Invoice amount exceeds approval limit", True),
    ],
    EntityType.PURCHASE_ORDER: [
        _option("VENDOR_ISSUE", "Issue with selected vendor", True),
        _option("PRICING_ISSUE", "PO pricing needs review", True),
    ],
    EntityType.RETURN_REQUEST: [
        _option("ITEM_NOT_ELIGIBLE", "Item is not eligible for return"),
        _option("RETURN_WINDOW_EXPIRED", "Return window has passed"),
        _option("ITEM_CONDITION", "Item condition does not meet return policy", True),
    ],
}

# Rejection kinds a client may choose from; CANCEL goes through its own flow
UI_REJECTION_ACTIONS = [RejectionAction.REJECT, RejectionAction.SEND_BACK, RejectionAction.HOLD]


def get_default_reason_codes(entity_type: EntityType) -> List[ReasonCodeOption]:
    """Entity-specific codes first, then the common ones"""
    return list(ENTITY_REASON_CODES.get(EntityType(entity_type), [])) + list(COMMON_REASON_CODES)


def get_reason_label(entity_type: EntityType, code: str) -> Optional[str]:
    for option in get_default_reason_codes(entity_type):
        if option.code == code:
            return option.label
    return None
