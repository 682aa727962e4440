"""
RNC/Cédula taxpayer name lookup

Order: external registry (DGII_RNC_API_URL, optional), built-in demo
registry, generic placeholder name.
"""
import logging

import requests
from flask import current_app

from utils import clean_tax_id, describe_tax_id, mask_tax_id, PLACEHOLDER_CLIENT_NAME

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 8

DEMO_REGISTRY = {
    '101010101': 'JUAN PEREZ',
    '130851255': 'ASOCIACION DE ESPECIALISTAS FISCALES',
    '40222222222': 'DRA. MARIA RODRIGUEZ (DEMO)',
    '22301650929': 'ASOCIACION PROFESIONAL DE SANTO DOMINGO',
}

# Formatos comunes de proveedores: razonSocial, nombre, name...
NAME_KEYS = ('razonSocial', 'nombreRazonSocial', 'name', 'nombre', 'RazonSocial', 'nombreComercial')


def fetch_from_registry(digits):
    """Query the configured external registry; any failure returns None"""
    base_url = current_app.config.get('DGII_RNC_API_URL')
    if not base_url:
        return None

    try:
        response = requests.get(
            base_url,
            params={'rnc': digits},
            headers={'Accept': 'application/json'},
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Consulta RNC externa falló para {mask_tax_id(digits)}: {e}")
        return None

    if not isinstance(data, dict):
        return None
    name = next((data[key] for key in NAME_KEYS if data.get(key)), None)
    if not name:
        return None
    return str(name).strip()


def lookup_taxpayer(raw):
    """
    Validate an RNC/Cédula and resolve the taxpayer name

    Returns:
        Dict with 'valid', and when valid 'rnc', 'name', 'type', 'formatted', 'source'
    """
    description = describe_tax_id(raw)
    if not description['valid']:
        return {'valid': False, 'message': description['message']}

    digits = clean_tax_id(raw)
    result = {
        'valid': True,
        'rnc': digits,
        'formatted': description['formatted'],
        'type': description['type'],
    }

    name = fetch_from_registry(digits)
    if name:
        result.update(name=name, source='registry')
    elif digits in DEMO_REGISTRY:
        result.update(name=DEMO_REGISTRY[digits], source='demo')
    else:
        result.update(name=PLACEHOLDER_CLIENT_NAME, source='default')

    logger.info(f"Consulta RNC {mask_tax_id(digits)} resuelta desde {result['source']}")
    return result
