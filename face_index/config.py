"""
Configuration Module

Loads the YAML configuration and merges it over built-in defaults.
"""

import copy
import logging
import os
from typing import Dict, Any, Optional
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = 'config/config.yaml'

DEFAULT_CONFIG: Dict[str, Any] = {
    'geometry': {
        'padding_fraction': 0.15,
        'face_size': [224, 224],
        'min_confidence': 0.5,
    },
    'face_detection': {
        'min_face_size': 30,
        'scale_factor': 1.1,
        'min_neighbors': 5,
    },
    'embedding': {
        'backend': 'http',
        'service_url': 'http://127.0.0.1:1301',
        'timeout': 30,
        'max_retries': 0,
        'content_type': 'image/jpeg',
        'normalization': True,
        'use_gpu': False,
    },
    'vector_store': {
        'backend': 'chromadb',
        'collection_name': 'face_embeddings',
        'dimension': 512,
        'similarity_metric': 'cosine',
        'candidate_pool': 32,
    },
    'storage': {
        'persist': True,
        'embeddings_path': 'data/embeddings',
        'database_file': 'data/vectors.pkl',
    },
    'api': {
        'host': '0.0.0.0',
        'port': 1300,
        'max_content_length': 50 * 1024 * 1024,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply EMBEDDING_SERVICE_URL and FACE_INDEX_PORT if set."""
    service_url = os.environ.get('EMBEDDING_SERVICE_URL')
    if service_url:
        config['embedding']['service_url'] = service_url

    port = os.environ.get('FACE_INDEX_PORT')
    if port:
        config['api']['port'] = int(port)

    return config


def load_config(config_path: Optional[str] = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    A missing or unreadable file is logged and the defaults are used.

    Args:
        config_path: Path to configuration file

    Returns:
        Complete configuration dictionary
    """
    overrides = {}
    if config_path:
        try:
            with open(config_path, 'r') as f:
                overrides = yaml.safe_load(f) or {}
            logger.info(f"Configuration loaded from {config_path}")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config: {e}")

    return apply_env_overrides(merge_config(DEFAULT_CONFIG, overrides))
