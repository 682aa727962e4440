"""
Utility functions for the Dominican Republic invoicing platform
Includes RNC/Cédula checksum validation, NCF structure rules and
standardized API error responses
"""
import re
import uuid
import logging
from typing import Optional, Dict, Any
from datetime import datetime, date, timedelta, timezone
from flask import jsonify, session, has_request_context

# Configure logging
logger = logging.getLogger(__name__)

RNC_WEIGHTS = (7, 9, 8, 6, 5, 4, 3, 2)
CEDULA_WEIGHTS = (1, 2, 1, 2, 1, 2, 1, 2, 1, 2)

PLACEHOLDER_CLIENT_NAME = 'CONTRIBUYENTE REGISTRADO'

# Tipos de NCF según el tipo de cliente
NCF_TYPES_BUSINESS = ('01', '31')
NCF_TYPES_CONSUMER = ('02', '32')
NCF_TYPES_GOVERNMENT = ('15', '45')

# República Dominicana: UTC-4 todo el año (sin horario de verano)
LOCAL_TIMEZONE = timezone(timedelta(hours=-4), 'AST')


def generate_error_id() -> str:
    """
    Genera un ID único para rastreo de errores

    Returns:
        str: ID único en formato UUID corto (primeros 8 caracteres)
    """
    return str(uuid.uuid4())[:8].upper()


def get_user_context() -> Dict[str, Any]:
    """
    Obtiene contexto del usuario actual para logging

    Returns:
        Dict con información del usuario (user_id, email, role)
    """
    if has_request_context() and session.get('user_id'):
        return {
            'user_id': session.get('user_id'),
            'email': session.get('email', 'unknown'),
            'role': session.get('role', 'unknown'),
        }

    return {'user_id': None, 'email': 'anonymous', 'role': 'unknown'}


def log_error(error_type: str, message: str, error_id: str = None,
              context: Dict[str, Any] = None, exc_info: bool = False):
    """
    Logging centralizado de errores con contexto completo

    Args:
        error_type: Tipo de error ('validation', 'permission', 'not_found', 'server', 'business', 'conflict')
        message: Mensaje descriptivo del error
        error_id: ID único del error (se genera automáticamente si no se proporciona)
        context: Contexto adicional (document_id, batch_id, etc.)
        exc_info: Si se debe incluir información de excepción
    """
    if error_id is None:
        error_id = generate_error_id()

    user_ctx = get_user_context()

    log_data = {
        'error_id': error_id,
        'error_type': error_type,
        'msg_detail': message,
        'user_id': user_ctx.get('user_id'),
        'user_email': user_ctx.get('email'),
        'role': user_ctx.get('role'),
    }

    if context:
        log_data.update(context)

    # Determinar nivel de log según tipo de error
    if error_type in ['validation', 'business', 'permission', 'not_found', 'conflict']:
        logger.warning(f"[{error_id}] {message}", extra=log_data, exc_info=exc_info)
    else:  # server errors
        logger.error(f"[{error_id}] {message}", extra=log_data, exc_info=exc_info)


def log_success(operation: str, message: str, context: Dict[str, Any] = None):
    """
    Logging de operaciones fiscales exitosas

    Args:
        operation: Nombre de la operación (ej: 'invoice_issued', 'batch_created')
        message: Mensaje descriptivo del éxito
        context: Contexto adicional (document_id, ncf, batch_id, etc.)
    """
    user_ctx = get_user_context()

    log_data = {
        'operation': operation,
        'msg_detail': message,
        'user_id': user_ctx.get('user_id'),
        'user_email': user_ctx.get('email'),
        'role': user_ctx.get('role'),
        'timestamp': datetime.utcnow().isoformat()
    }

    if context:
        log_data.update(context)

    logger.info(f"[SUCCESS] {operation}: {message}", extra=log_data)


def error_response(error_type: str, message: str, details: Optional[str] = None,
                   field: Optional[str] = None, status_code: int = 400,
                   log_context: Dict[str, Any] = None, **kwargs):
    """
    Genera una respuesta de error estandarizada para endpoints de API con logging automático

    Args:
        error_type: Tipo de error ('validation', 'permission', 'not_found', 'server', 'business', 'conflict')
        message: Mensaje principal del error (breve y claro)
        details: Detalles adicionales del error (opcional)
        field: Campo que causó el error (opcional)
        status_code: Código HTTP de respuesta (default: 400)
        log_context: Contexto adicional para logging (document_id, batch_id, etc.)
        **kwargs: Datos adicionales a incluir en la respuesta

    Returns:
        tuple: (jsonify response, status_code)

    Examples:
        >>> return error_response(
        ...     error_type='business',
        ...     message='No hay secuencias NCF disponibles',
        ...     code='NO_SEQUENCE_AVAILABLE',
        ...     log_context={'document_type': '31'}
        ... )
    """
    error_id = generate_error_id()

    log_error(
        error_type=error_type,
        message=message,
        error_id=error_id,
        context=log_context or {}
    )

    response_data = {
        'error': message,
        'type': error_type,
        'error_id': error_id,
        'timestamp': datetime.utcnow().isoformat()
    }

    if details:
        response_data['details'] = details

    if field:
        response_data['field'] = field

    response_data.update(kwargs)

    return jsonify(response_data), status_code


def clean_tax_id(value) -> str:
    """Remove every non-digit character from an RNC/Cédula"""
    if not value:
        return ''
    return re.sub(r'[^\d]', '', str(value))


def _rnc_check_digit(digits: str) -> int:
    total = sum(int(d) * w for d, w in zip(digits[:8], RNC_WEIGHTS))
    remainder = total % 11
    if remainder == 0:
        return 2
    if remainder == 1:
        return 1
    return 11 - remainder


def _cedula_check_digit(digits: str) -> int:
    total = 0
    for d, w in zip(digits[:10], CEDULA_WEIGHTS):
        product = int(d) * w
        if product > 9:
            product = product // 10 + product % 10
        total += product
    return (10 - total % 10) % 10


def validate_tax_id(raw) -> bool:
    """
    Validate a Dominican RNC (9 digits) or Cédula (11 digits) checksum.

    Separators are ignored. Any other length, or a failed check digit,
    yields False; malformed input never raises.
    """
    digits = clean_tax_id(raw)

    if len(digits) == 9:
        return _rnc_check_digit(digits) == int(digits[8])

    if len(digits) == 11:
        return _cedula_check_digit(digits) == int(digits[10])

    return False


def describe_tax_id(raw) -> Dict[str, Any]:
    """
    Validate an RNC/Cédula and describe the result for API responses

    Args:
        raw: The RNC or Cédula as entered by the user

    Returns:
        Dict with validation result and details
    """
    digits = clean_tax_id(raw)

    if len(digits) not in (9, 11):
        return {
            'valid': False,
            'formatted': digits,
            'type': None,
            'message': f'RNC/Cédula debe tener 9 u 11 dígitos, recibido {len(digits)}'
        }

    if not validate_tax_id(digits):
        return {
            'valid': False,
            'formatted': digits,
            'type': None,
            'message': 'Documento inválido: dígito verificador incorrecto'
        }

    if len(digits) == 9:
        return {
            'valid': True,
            'formatted': f"{digits[:3]}-{digits[3:8]}-{digits[8]}",
            'type': 'JURIDICA',
            'message': 'RNC válido'
        }

    return {
        'valid': True,
        'formatted': f"{digits[:3]}-{digits[3:10]}-{digits[10]}",
        'type': 'FISICA',
        'message': 'Cédula válida'
    }


def mask_tax_id(value) -> str:
    """Mask an RNC/Cédula for log output, e.g. 131888444 -> 13***8444"""
    digits = clean_tax_id(value)
    if len(digits) < 6:
        return '***'
    return f"{digits[:2]}***{digits[-4:]}"


def validate_ncf_structure(ncf: str) -> Dict[str, Any]:
    """
    Validate the structure of an NCF received from a supplier

    Format: SERIE (B/E) + TIPO (2 dígitos) + SECUENCIA
    (8 dígitos para la serie B, 10 para la serie E)

    Args:
        ncf: The NCF string to validate

    Returns:
        Dict with validation result and details
    """
    if not ncf:
        return {
            'valid': False,
            'formatted': '',
            'series': None,
            'document_type': None,
            'number': None,
            'message': 'NCF requerido'
        }

    clean_ncf = re.sub(r'[^\dA-Za-z]', '', ncf).upper()

    match = re.match(r'^([BE])(\d{2})(\d+)$', clean_ncf)
    if not match:
        return {
            'valid': False,
            'formatted': clean_ncf,
            'series': None,
            'document_type': None,
            'number': None,
            'message': 'Formato de NCF inválido. Debe ser: B0100000001 o E310000000001'
        }

    series, document_type, number = match.groups()
    expected_length = 10 if series == 'E' else 8

    if len(number) != expected_length:
        return {
            'valid': False,
            'formatted': clean_ncf,
            'series': series,
            'document_type': document_type,
            'number': number,
            'message': f'La secuencia de un NCF serie {series} debe tener {expected_length} dígitos'
        }

    if int(number) < 1:
        return {
            'valid': False,
            'formatted': clean_ncf,
            'series': series,
            'document_type': document_type,
            'number': number,
            'message': 'La secuencia del NCF debe ser mayor que cero'
        }

    return {
        'valid': True,
        'formatted': clean_ncf,
        'series': series,
        'document_type': document_type,
        'number': number,
        'message': 'NCF válido'
    }


def validate_ncf_for_client(document_type: str, client_tax_id: str) -> Dict[str, Any]:
    """
    Check that the NCF type matches the kind of client being invoiced

    Args:
        document_type: Two-digit NCF type ('31', '02', ...)
        client_tax_id: RNC/Cédula of the client

    Returns:
        Dict with 'valid' and, when invalid, a 'message'
    """
    digits = clean_tax_id(client_tax_id)
    if not digits:
        return {'valid': True}

    is_business = len(digits) == 9
    is_government_or_individual = digits.startswith('4') or len(digits) == 11

    if document_type in NCF_TYPES_BUSINESS and not is_business:
        return {'valid': False, 'message': 'NCF B01/E31 solo para empresas (RNC 9 dígitos)'}
    if document_type in NCF_TYPES_CONSUMER and is_business:
        return {'valid': False, 'message': 'NCF B02/E32 para consumidor final, no empresas'}
    if document_type in NCF_TYPES_GOVERNMENT and not is_government_or_individual:
        return {'valid': False, 'message': 'NCF B15/E45 solo para facturación gubernamental'}
    return {'valid': True}


def calculate_itbis(subtotal: float, rate: float = 0.18) -> float:
    """
    Calculate ITBIS (Dominican Republic tax)

    Args:
        subtotal: The taxable amount
        rate: Tax rate (default 18% estándar)

    Returns:
        Tax amount
    """
    return round(subtotal * rate, 2)


def local_now(utc_now: datetime = None) -> datetime:
    """Hora local de Santo Domingo (naive) para un instante UTC naive"""
    utc_now = utc_now or datetime.utcnow()
    return utc_now.replace(tzinfo=timezone.utc).astimezone(LOCAL_TIMEZONE).replace(tzinfo=None)


def local_today(utc_now: datetime = None) -> date:
    """Fecha fiscal en República Dominicana; el vencimiento de lotes se compara con ella"""
    return local_now(utc_now).date()


def local_to_utc(local_dt: datetime) -> datetime:
    """Instante UTC naive para una hora local; valores con zona conservan su desplazamiento"""
    if local_dt.tzinfo is None:
        local_dt = local_dt.replace(tzinfo=LOCAL_TIMEZONE)
    return local_dt.astimezone(timezone.utc).replace(tzinfo=None)


def month_bounds_utc(year: int, month: int) -> tuple:
    """
    Límites UTC [inicio, fin) de un mes calendario local

    Las fechas se guardan en UTC; el mes fiscal sigue la hora local.
    """
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return local_to_utc(start), local_to_utc(end)


def sanitize_input(value: str, max_length: int = 255) -> str:
    """
    Sanitize input string for database storage

    Args:
        value: The input string
        max_length: Maximum allowed length

    Returns:
        Sanitized string
    """
    if not value:
        return ''

    # Remove potentially dangerous characters
    sanitized = re.sub(r'[<>"\']', '', str(value))

    return sanitized.strip()[:max_length]


def validate_email(email: str) -> Dict[str, Any]:
    """
    Validate email address

    Args:
        email: The email address to validate

    Returns:
        Dict with validation result
    """
    if not email:
        return {
            'valid': True,
            'formatted': '',
            'message': 'Email no proporcionado'
        }

    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'

    if re.match(pattern, email.strip().lower()):
        return {
            'valid': True,
            'formatted': email.strip().lower(),
            'message': 'Email válido'
        }
    return {
        'valid': False,
        'formatted': email,
        'message': 'Formato de email inválido'
    }


def sanitize_phone(phone: str) -> str:
    """Keep only digits, '+', '-' and spaces in a phone number"""
    return re.sub(r'[^0-9+\-\s]', '', sanitize_input(phone, 20))


def validate_numeric_range(value: Any, min_val: float = None, max_val: float = None, field_name: str = "Campo") -> Dict[str, Any]:
    """
    Validate numeric values within a range

    Args:
        value: The value to validate
        min_val: Minimum allowed value
        max_val: Maximum allowed value
        field_name: Name of the field for error messages

    Returns:
        Dict with validation result
    """
    try:
        num_value = float(value)
    except (ValueError, TypeError):
        return {
            'valid': False,
            'value': value,
            'message': f'{field_name} debe ser un número válido'
        }

    if min_val is not None and num_value < min_val:
        return {
            'valid': False,
            'value': num_value,
            'message': f'{field_name} debe ser mayor o igual a {min_val}'
        }

    if max_val is not None and num_value > max_val:
        return {
            'valid': False,
            'value': num_value,
            'message': f'{field_name} debe ser menor o igual a {max_val}'
        }

    return {
        'valid': True,
        'value': num_value,
        'message': f'{field_name} válido'
    }


def validate_integer_range(value: Any, min_val: int = None, max_val: int = None, field_name: str = "Campo") -> Dict[str, Any]:
    """
    Validate integer values within a range

    Args:
        value: The value to validate
        min_val: Minimum allowed value
        max_val: Maximum allowed value
        field_name: Name of the field for error messages

    Returns:
        Dict with validation result
    """
    if isinstance(value, bool):
        return {
            'valid': False,
            'value': value,
            'message': f'{field_name} debe ser un número entero válido'
        }
    try:
        int_value = int(value)
    except (ValueError, TypeError):
        return {
            'valid': False,
            'value': value,
            'message': f'{field_name} debe ser un número entero válido'
        }

    if min_val is not None and int_value < min_val:
        return {
            'valid': False,
            'value': int_value,
            'message': f'{field_name} debe ser mayor o igual a {min_val}'
        }

    if max_val is not None and int_value > max_val:
        return {
            'valid': False,
            'value': int_value,
            'message': f'{field_name} debe ser menor o igual a {max_val}'
        }

    return {
        'valid': True,
        'value': int_value,
        'message': f'{field_name} válido'
    }


def validate_json_structure(data: dict, required_fields: list, optional_fields: list = None) -> Dict[str, Any]:
    """
    Validate JSON structure for API endpoints

    Args:
        data: The JSON data to validate
        required_fields: List of required field names
        optional_fields: List of optional field names

    Returns:
        Dict with validation result
    """
    if not isinstance(data, dict):
        return {
            'valid': False,
            'message': 'Los datos deben ser un objeto JSON válido'
        }

    missing_fields = [
        field for field in required_fields
        if field not in data or data[field] is None or data[field] == ''
    ]

    if missing_fields:
        return {
            'valid': False,
            'message': f'Campos requeridos faltantes: {", ".join(missing_fields)}'
        }

    if optional_fields is not None:
        allowed_fields = set(required_fields) | set(optional_fields)
        unexpected_fields = [field for field in data.keys() if field not in allowed_fields]

        if unexpected_fields:
            return {
                'valid': False,
                'message': f'Campos no permitidos: {", ".join(unexpected_fields)}'
            }

    return {
        'valid': True,
        'message': 'Estructura JSON válida'
    }
