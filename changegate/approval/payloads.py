"""
Change Payload Validation

Kind-specific structural checks run on every submission before anything is
written. Each validator returns a list of human-readable problems; an empty
list means the payload is acceptable.
"""

import re
from typing import Any, Callable, Dict, List, Optional

from changegate.datastore.models import ChangeKind
from changegate.errors import ValidationError


TABLE_NAME_MAX_LENGTH = 100
FIELD_LABEL_MAX_LENGTH = 255
TABLE_NAME_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9_\s]*$')

FIELD_TYPES = frozenset({
    'text', 'text_choice', 'text_multiline', 'richtext', 'numeric',
    'currency', 'percent', 'date', 'datetime', 'checkbox', 'email',
    'phone', 'url', 'address', 'file', 'lookup', 'formula', 'reference'
})

RELATIONSHIP_TYPES = frozenset({'one-to-many', 'many-to-many', 'one-to-one'})


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def validate_table_name(name: Any) -> List[str]:
    """Check a table name against the platform's naming rules"""
    if _blank(name):
        return ["Table name is required"]
    if not isinstance(name, str):
        return ["Table name must be a string"]

    errors = []
    if len(name) > TABLE_NAME_MAX_LENGTH:
        errors.append(f"Table name must be {TABLE_NAME_MAX_LENGTH} characters or less")
    if not TABLE_NAME_PATTERN.match(name):
        errors.append(
            "Table name must start with a letter and contain only letters, "
            "numbers, underscores, and spaces"
        )
    return errors


def validate_field(field: Any) -> List[str]:
    """Check a single field definition"""
    if not isinstance(field, dict):
        return ["Field definition must be an object"]

    errors = []
    label = field.get('label')
    field_type = field.get('field_type')

    if _blank(label):
        errors.append("Field label is required")
    elif len(str(label)) > FIELD_LABEL_MAX_LENGTH:
        errors.append(f"Field label must be {FIELD_LABEL_MAX_LENGTH} characters or less")

    if _blank(field_type):
        errors.append("Field type is required")
    elif field_type not in FIELD_TYPES:
        errors.append(f"Unknown field type: {field_type}")

    if field_type == 'text_choice' and not field.get('choices'):
        errors.append("Choice fields must have at least one choice option")

    if field_type == 'formula' and _blank(field.get('formula')):
        errors.append("Formula fields must have a formula")

    if field_type == 'lookup':
        if _blank(field.get('lookup_table_id')):
            errors.append("Lookup fields must specify a lookup table ID")
        if _blank(field.get('lookup_field_id')):
            errors.append("Lookup fields must specify a lookup field ID")

    return errors


def _validate_table_create(payload: Dict[str, Any]) -> List[str]:
    errors = validate_table_name(payload.get('name'))

    fields = payload.get('fields') or []
    if not isinstance(fields, list):
        return errors + ["Table fields must be a list"]

    labels = set()
    for field in fields:
        label = field.get('label') if isinstance(field, dict) else None
        if label and label in labels:
            errors.append(f"Duplicate field label: {label}")
        labels.add(label)
        errors.extend(validate_field(field))

    return errors


def _validate_table_update(payload: Dict[str, Any]) -> List[str]:
    updatable = {'name', 'description', 'single_record_name', 'plural_record_name'}
    if not updatable & set(payload):
        return [f"Table update must change at least one of: {', '.join(sorted(updatable))}"]
    if 'name' in payload:
        return validate_table_name(payload['name'])
    return []


def _validate_table_delete(payload: Dict[str, Any]) -> List[str]:
    if _blank(payload.get('table_id')):
        return ["Table ID is required"]
    return []


def _validate_field_create(payload: Dict[str, Any]) -> List[str]:
    return validate_field(payload)


def _validate_field_update(payload: Dict[str, Any]) -> List[str]:
    errors = []
    if _blank(payload.get('field_id')):
        errors.append("Field ID is required")

    changes = {key: value for key, value in payload.items() if key != 'field_id'}
    if not changes:
        errors.append("Field update must change at least one property")
    if 'label' in changes:
        if _blank(changes['label']):
            errors.append("Field label cannot be empty")
        elif len(str(changes['label'])) > FIELD_LABEL_MAX_LENGTH:
            errors.append(f"Field label must be {FIELD_LABEL_MAX_LENGTH} characters or less")
    return errors


def _validate_field_delete(payload: Dict[str, Any]) -> List[str]:
    if _blank(payload.get('field_id')):
        return ["Field ID is required"]
    return []


def _validate_relationship_create(payload: Dict[str, Any]) -> List[str]:
    errors = []
    if _blank(payload.get('parent_table_id')) or _blank(payload.get('child_table_id')):
        errors.append("Parent and child table IDs are required")

    relationship_type = payload.get('relationship_type', 'one-to-many')
    if relationship_type not in RELATIONSHIP_TYPES:
        errors.append(f"Unknown relationship type: {relationship_type}")
    elif relationship_type == 'one-to-many' and _blank(payload.get('foreign_key_field_id')):
        errors.append("One-to-many relationships require a foreign key field ID")

    for lookup in payload.get('lookup_fields') or []:
        if _blank(lookup.get('parent_field_id')):
            errors.append("Lookup field must specify parent field ID")
        if _blank(lookup.get('child_field_label')):
            errors.append("Lookup field must specify child field label")

    return errors


def _validate_relationship_delete(payload: Dict[str, Any]) -> List[str]:
    if _blank(payload.get('relationship_id')):
        return ["Relationship ID is required"]
    return []


def _validate_deployment(payload: Dict[str, Any]) -> List[str]:
    errors = []
    if _blank(payload.get('codepage_id')):
        errors.append("Codepage ID is required")
    if _blank(payload.get('version')):
        errors.append("Codepage version is required")
    return errors


def _validate_rollback_request(payload: Dict[str, Any]) -> List[str]:
    if _blank(payload.get('rollback_of')):
        return ["Rollback request must reference the change it reverts"]
    return []


VALIDATORS: Dict[ChangeKind, Callable[[Dict[str, Any]], List[str]]] = {
    ChangeKind.TABLE_CREATE: _validate_table_create,
    ChangeKind.TABLE_UPDATE: _validate_table_update,
    ChangeKind.TABLE_DELETE: _validate_table_delete,
    ChangeKind.FIELD_CREATE: _validate_field_create,
    ChangeKind.FIELD_UPDATE: _validate_field_update,
    ChangeKind.FIELD_DELETE: _validate_field_delete,
    ChangeKind.RELATIONSHIP_CREATE: _validate_relationship_create,
    ChangeKind.RELATIONSHIP_DELETE: _validate_relationship_delete,
    ChangeKind.DEPLOYMENT: _validate_deployment,
}


def validate_payload(kind: ChangeKind, payload: Any, rollback_request: bool = False) -> List[str]:
    """
    Validate a change payload for its kind.

    Args:
        kind: Change kind
        payload: Payload to check
        rollback_request: Check the rollback-request shape instead of the
            kind's mutation shape. Only rollback requests may carry
            'rollback_of'.

    Returns:
        List of problems (empty when valid)
    """
    if not isinstance(payload, dict) or not payload:
        return ["Payload must be a non-empty object"]

    if rollback_request:
        return _validate_rollback_request(payload)

    if 'rollback_of' in payload:
        return ["rollback_of is reserved for rollback requests"]

    return VALIDATORS[kind](payload)


def ensure_valid(kind: ChangeKind, payload: Any, rollback_request: bool = False):
    """
    Raise ValidationError if the payload is not acceptable.

    Raises:
        ValidationError: Carrying every problem found
    """
    errors = validate_payload(kind, payload, rollback_request)
    if errors:
        raise ValidationError(f"Invalid {kind.value} payload: {errors[0]}", errors)


# ===== Payload builders =====

def table_create_payload(
    name: str,
    fields: Optional[List[Dict[str, Any]]] = None,
    description: Optional[str] = None
) -> Dict[str, Any]:
    """Build a table_create payload"""
    payload: Dict[str, Any] = {'name': name, 'fields': list(fields or [])}
    if description:
        payload['description'] = description
    return payload


def field_payload(label: str, field_type: str, **options) -> Dict[str, Any]:
    """Build a field definition (choices, formula, lookup_table_id, ...)"""
    payload = {'label': label, 'field_type': field_type}
    payload.update({key: value for key, value in options.items() if value is not None})
    return payload


def deployment_payload(codepage_id: str, version: str, **extra) -> Dict[str, Any]:
    """Build a deployment payload"""
    payload = {'codepage_id': codepage_id, 'version': version}
    payload.update(extra)
    return payload


def rollback_request_payload(change_id: str, reason: str) -> Dict[str, Any]:
    """Build the payload of a rollback request change"""
    return {'rollback_of': change_id, 'reason': reason}
