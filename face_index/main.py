"""
Main Application Module

Command-line entry point: serve the HTTP API, or register, search, inspect
and delete identities directly from image files.
"""

import argparse
import json
import logging
import sys
from typing import Dict, Any, List

from .config import load_config, DEFAULT_CONFIG_PATH
from .errors import FaceIndexError
from .geometry import RawRect, normalize_rect
from .recognizer import FaceRecognizer

logger = logging.getLogger(__name__)


def configure_logging(config: Dict[str, Any]):
    """Configure root logging from the logging section."""
    logging_config = config.get('logging', {})
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if logging_config.get('file'):
        handlers.append(logging.FileHandler(logging_config['file']))

    logging.basicConfig(
        level=getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


def _read_image(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def _parse_metadata(pairs: List[str]) -> Dict[str, Any]:
    """Parse key=value pairs; numeric values become numbers."""
    metadata = {}
    for pair in pairs or []:
        key, sep, value = pair.partition('=')
        if not sep:
            raise ValueError(f"Metadata must be key=value, got '{pair}'")
        try:
            metadata[key] = int(value)
        except ValueError:
            try:
                metadata[key] = float(value)
            except ValueError:
                metadata[key] = value
    return metadata


def _print(data: Any):
    print(json.dumps(data, indent=2))


def cmd_serve(args, config):
    from .api import create_app

    api_config = config.get('api', {})
    with FaceRecognizer.from_config(config) as recognizer:
        app = create_app(recognizer, config)
        host = args.host or api_config.get('host', '0.0.0.0')
        port = args.port or api_config.get('port', 1300)
        logger.info(f"Server running on http://{host}:{port}")
        app.run(host=host, port=port, threaded=True)
    return 0


def cmd_register(args, config):
    with FaceRecognizer.from_config(config) as recognizer:
        record = recognizer.register_identity(
            args.id, _read_image(args.image), _parse_metadata(args.metadata),
            content_type=args.content_type
        )
        _print({'id': record.id, 'vectorDimension': int(record.vector.shape[0])})
    return 0


def cmd_search(args, config):
    with FaceRecognizer.from_config(config) as recognizer:
        results = recognizer.find_similar(
            _read_image(args.image), args.k, _parse_metadata(args.filter) or None,
            content_type=args.content_type
        )
        _print({'results': [result.to_dict() for result in results]})
    return 0


def cmd_get(args, config):
    with FaceRecognizer.from_config(config) as recognizer:
        _print(recognizer.get_identity(args.id).to_dict())
    return 0


def cmd_delete(args, config):
    with FaceRecognizer.from_config(config) as recognizer:
        _print({'id': args.id, 'deleted': recognizer.delete_identity(args.id)})
    return 0


def cmd_normalize(args, config):
    padding = args.padding
    if padding is None:
        padding = config.get('geometry', {}).get('padding_fraction', 0.15)
    rect = normalize_rect(
        RawRect(args.origin_x, args.origin_y, args.width, args.height),
        args.frame_width, args.frame_height, padding_fraction=padding
    )
    _print(rect.to_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Face Identity Index')
    parser.add_argument('--config', '-c', default=DEFAULT_CONFIG_PATH,
                        help='Configuration file path')
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help='Run the HTTP API')
    serve.add_argument('--host', help='Bind address')
    serve.add_argument('--port', type=int, help='Listen port')
    serve.set_defaults(func=cmd_serve)

    register = subparsers.add_parser('register', help='Register an identity from an image')
    register.add_argument('--id', required=True, help='Identity id')
    register.add_argument('--image', required=True, help='Face image file')
    register.add_argument('--metadata', '-m', nargs='*', help='key=value metadata')
    register.add_argument('--content-type', default=None, help='Image MIME type')
    register.set_defaults(func=cmd_register)

    search = subparsers.add_parser('search', help='Find identities similar to an image')
    search.add_argument('--image', required=True, help='Face image file')
    search.add_argument('-k', type=int, default=5, help='Number of results')
    search.add_argument('--filter', '-f', nargs='*', help='key=value metadata constraints')
    search.add_argument('--content-type', default=None, help='Image MIME type')
    search.set_defaults(func=cmd_search)

    get = subparsers.add_parser('get', help='Show a registered identity')
    get.add_argument('--id', required=True)
    get.set_defaults(func=cmd_get)

    delete = subparsers.add_parser('delete', help='Delete a registered identity')
    delete.add_argument('--id', required=True)
    delete.set_defaults(func=cmd_delete)

    normalize = subparsers.add_parser('normalize', help='Normalize a detector rectangle')
    normalize.add_argument('origin_x', type=float)
    normalize.add_argument('origin_y', type=float)
    normalize.add_argument('width', type=float)
    normalize.add_argument('height', type=float)
    normalize.add_argument('--frame-width', type=int, required=True)
    normalize.add_argument('--frame-height', type=int, required=True)
    normalize.add_argument('--padding', type=float, default=None)
    normalize.set_defaults(func=cmd_normalize)

    return parser


def main(argv: List[str] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    configure_logging(config)

    try:
        return args.func(args, config)
    except FaceIndexError as e:
        logger.error(f"{e.stage} stage failed: {e.message}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
