#!/usr/bin/env python3
"""
CLI workflow runner for the diagram extraction pipeline.

Provides command-line interface for batch processing question papers and
for checking coordinates by hand.
"""
import argparse
import asyncio
import json
import mimetypes
import os
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from api.dependencies import build_services
from config.logging_config import setup_logging
from config.settings import settings
from core.models import DiagramCoordinates, ImageDimensions, InputFile
from data.database import get_db_manager, init_database, session_scope
from geometry.sanitizer import CoordinateSanitizer
from geometry.validator import CoordinateValidator
from serving.storage_service import DiagramStorageService


def load_input_file(file_path: str) -> InputFile:
    """Read a file from disk and guess its MIME type."""
    mime_type, _ = mimetypes.guess_type(file_path)
    with open(file_path, 'rb') as f:
        content = f.read()
    return InputFile(
        name=os.path.basename(file_path),
        content=content,
        mime_type=mime_type or 'application/octet-stream'
    )


def print_progress(session):
    progress = session.progress
    print(
        f"  [{progress.percentage:5.1f}%] {progress.completed_steps}/{progress.total_steps} "
        f"{progress.current_step}",
        flush=True
    )


async def process_files_cli(file_paths, store: bool = True, output_path: str = None):
    """Run a processing session over files and print the summary."""
    print("=" * 60)
    print(f"Processing {len(file_paths)} file(s)")
    print("=" * 60)

    inputs = []
    for path in file_paths:
        if not os.path.exists(path):
            print(f"❌ Error: File not found: {path}")
            return None
        inputs.append(load_input_file(path))

    db_manager = None
    if store and settings.enable_database_storage:
        init_database(settings.database_url)
        db_manager = get_db_manager()
    services = build_services(settings, db_manager=db_manager)

    orchestrator = services.orchestrator
    session_id = await orchestrator.start_processing_session(inputs, on_progress=print_progress)
    print(f"✓ Session started: {session_id}")
    session = await orchestrator.wait_for_session(session_id)

    results = orchestrator.get_orchestration_results(session_id)
    print()
    print(f"Session {session.status.value}")
    for entry in session.files:
        marker = "✓" if entry.status.value == 'completed' else "❌"
        line = f"  {marker} {entry.name}: {entry.status.value}"
        if entry.result is not None:
            line += f" (test {entry.result.test_id}, {entry.result.diagram_count} diagrams)"
        if entry.error:
            line += f" - {entry.error}"
        print(line)

    print()
    print(json.dumps(results.summary, indent=2))

    if output_path:
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(results.to_dict(), f, indent=2, ensure_ascii=False)
        print(f"✓ Results written to: {output_path}")
    print("=" * 60)
    return results


def _load_coordinates(raw: str):
    """Coordinates from a JSON string or a path to a JSON file."""
    if os.path.exists(raw):
        with open(raw, 'r', encoding='utf-8') as f:
            data = json.load(f)
    else:
        data = json.loads(raw)
    items = data if isinstance(data, list) else [data]
    return [DiagramCoordinates.from_dict(item) for item in items]


def validate_cli(coordinates: str, width: int, height: int, allow_overlap: bool = False) -> bool:
    """Validate coordinates and print the errors."""
    validator = CoordinateValidator()
    dims = ImageDimensions(width, height)
    coords = _load_coordinates(coordinates)
    if len(coords) == 1:
        result = validator.validate(coords[0], dims)
    else:
        result = validator.validate_array(coords, dims, allow_overlap=allow_overlap)

    if result.is_valid:
        print(f"✓ {len(coords)} box(es) valid for {width}x{height}")
    else:
        print(f"❌ Invalid for {width}x{height}:")
        for error in result.errors:
            print(f"  - {error}")
    return result.is_valid


def sanitize_cli(coordinates: str, width: int, height: int, profile: str):
    """Sanitize coordinates with a profile and print the outcome."""
    sanitizer = CoordinateSanitizer()
    dims = ImageDimensions(width, height)
    for coords in _load_coordinates(coordinates):
        result = sanitizer.sanitize_profile(profile, coords, dims)
        print(json.dumps(result.to_dict(), indent=2))


def list_documents_cli():
    """List stored tests."""
    init_database(settings.database_url)
    with session_scope() as session:
        storage = DiagramStorageService(session)
        documents = storage.list_documents(limit=100)
        if not documents:
            print("No documents found.")
            return
        print(f"{'ID':<24} {'Filename':<40} {'Pages':>5}")
        print("-" * 71)
        for doc in documents:
            print(f"{doc.id:<24} {doc.filename[:40]:<40} {doc.total_pages:>5}")


def show_coordinates_cli(test_id: str):
    """Print stored coordinate metadata for a test."""
    init_database(settings.database_url)
    with session_scope() as session:
        storage = DiagramStorageService(session)
        metadata = storage.list_by_test(test_id)
        if not metadata:
            print(f"❌ No coordinates stored for: {test_id}")
            return
        print(json.dumps([m.to_dict() for m in metadata], indent=2))


def main():
    parser = argparse.ArgumentParser(
        description='Diagram extraction CLI workflow'
    )
    parser.add_argument('--log-level', type=str, default=None, help='Override LOG_LEVEL')
    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Process command
    process_parser = subparsers.add_parser('process', help='Extract diagrams from PDF files')
    process_parser.add_argument('files', nargs='+', help='PDF files to process')
    process_parser.add_argument('--no-store', action='store_true', help='Do not persist results')
    process_parser.add_argument('-o', '--output', type=str, help='Write full results JSON to a file')

    # Validate command
    validate_parser = subparsers.add_parser('validate', help='Validate coordinates against an image size')
    validate_parser.add_argument('coordinates', type=str, help='JSON object/list or path to a JSON file')
    validate_parser.add_argument('--width', type=int, required=True, help='Image width in pixels')
    validate_parser.add_argument('--height', type=int, required=True, help='Image height in pixels')
    validate_parser.add_argument('--allow-overlap', action='store_true', help='Do not report overlaps')

    # Sanitize command
    sanitize_parser = subparsers.add_parser('sanitize', help='Sanitize coordinates with a profile')
    sanitize_parser.add_argument('coordinates', type=str, help='JSON object/list or path to a JSON file')
    sanitize_parser.add_argument('--width', type=int, required=True, help='Image width in pixels')
    sanitize_parser.add_argument('--height', type=int, required=True, help='Image height in pixels')
    sanitize_parser.add_argument(
        '--profile', type=str, default='storage',
        choices=['manual_edit', 'api_response', 'storage'], help='Sanitization profile'
    )

    # List command
    subparsers.add_parser('list', help='List stored tests')

    # Show command
    show_parser = subparsers.add_parser('show', help='Show stored coordinates for a test')
    show_parser.add_argument('test_id', type=str, help='Test ID')

    args = parser.parse_args()
    setup_logging(log_level=args.log_level)

    if args.command == 'process':
        results = asyncio.run(process_files_cli(
            args.files,
            store=not args.no_store,
            output_path=args.output
        ))
        sys.exit(0 if results is not None and results.success else 1)
    elif args.command == 'validate':
        valid = validate_cli(args.coordinates, args.width, args.height, args.allow_overlap)
        sys.exit(0 if valid else 1)
    elif args.command == 'sanitize':
        sanitize_cli(args.coordinates, args.width, args.height, args.profile)
    elif args.command == 'list':
        list_documents_cli()
    elif args.command == 'show':
        show_coordinates_cli(args.test_id)
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
