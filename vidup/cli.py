#!/usr/bin/env python3
"""
vidup - find duplicate footage across a video library by scene fingerprints.

Each video is reduced to a sequence of scenes (content hash + duration)
stored in a database; files sharing scenes are reported as duplicates.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .analyze import DEFAULT_FRAME_RATE, analyze_stream, delete_file, file_scenes
from .errors import FileAlreadyAnalyzed, FileEntryNotFound, VidupError
from .frames import is_video_file, open_video_frames, probe_frame_rate
from .search import DEFAULT_LIMIT, find_duplicates, top_relations
from .store import DEFAULT_DATABASE, SceneStore, open_store

logger = logging.getLogger("vidup")


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='vidup',
        description='Find duplicate videos by shared scenes',
        epilog='Without a mode option the file is analyzed and its scenes stored.'
    )
    parser.add_argument('file', nargs='?',
                        help='Video or raw 16x16 gray stream; its stem is the stored name')

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument('--init', action='store_true', help='Create the database tables')
    modes.add_argument('--delete', action='store_true', help='Delete the file and its scenes')
    modes.add_argument('--search', action='store_true', help='List files sharing scenes with the file')
    modes.add_argument('--top', nargs='?', type=positive_int, const=DEFAULT_LIMIT, metavar='N',
                       help='Show file relations for the N longest repeated scenes '
                            f'(default: {DEFAULT_LIMIT})')
    modes.add_argument('--files', action='store_true', help='List known files')
    modes.add_argument('--file-scenes', action='store_true', help='List the scenes of the file')

    parser.add_argument('--db', default=DEFAULT_DATABASE,
                        help='Database path or SQLAlchemy URL (default: $VIDUP_DATABASE or %(default)s)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Analyze without writing to the database')
    parser.add_argument('--force', action='store_true',
                        help='Re-analyze a file that was already analyzed')
    parser.add_argument('--stdin', action='store_true',
                        help='Read the raw frame stream from stdin, storing it under FILE')
    parser.add_argument('--frame-rate', type=float, default=None,
                        help=f'Frames per second (default: probed for videos, else {DEFAULT_FRAME_RATE})')
    parser.add_argument('--limit', type=positive_int, default=DEFAULT_LIMIT,
                        help='Maximum number of --search results')
    parser.add_argument('--dump-frames', metavar='DIR',
                        help="Save each scene's first frame as PNG into DIR")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log every frame and query')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


def run_analyze(store: SceneStore, args) -> int:
    name = Path(args.file).stem
    frame_rate = args.frame_rate

    print(f'analyzing "{name}"')
    options = dict(force=args.force, dry_run=args.dry_run, dump_dir=args.dump_frames)

    if args.stdin:
        result = analyze_stream(store, name, sys.stdin.buffer,
                                frame_rate=frame_rate or DEFAULT_FRAME_RATE, **options)
    elif is_video_file(args.file):
        if frame_rate is None:
            frame_rate = probe_frame_rate(args.file) or DEFAULT_FRAME_RATE
        logger.debug("Decoding %s at %.3f fps", args.file, frame_rate)
        with open_video_frames(args.file) as stream:
            result = analyze_stream(store, name, stream, frame_rate=frame_rate, **options)
    else:
        with open(args.file, 'rb') as stream:
            result = analyze_stream(store, name, stream,
                                    frame_rate=frame_rate or DEFAULT_FRAME_RATE, **options)

    if result.dry_run:
        print(f"{result.scene_count} scenes found (dry run).")
    else:
        print(f"{result.scene_count} scenes registered.")
    return 0


def run_search(store: SceneStore, name: str, limit: int) -> int:
    entry = store.require_file_entry(name)
    report = find_duplicates(store, entry.id, limit)
    if not report.found:
        print("no duplicated videos.")
        return 0
    for match in report.matches:
        print(f"{match.shared_scenes:8d} {match.name}")
    return 0


def run_top(store: SceneStore, limit: int) -> int:
    for relation in top_relations(store, limit):
        print(f"---- {relation.seconds:8.1f} seconds matched")
        print(relation.name_a)
        print(relation.name_b)
    return 0


def run_files(store: SceneStore) -> int:
    print("name\tstatus")
    for entry in store.list_files():
        print(f"{entry.name}\t{int(entry.status)}")
    return 0


def run_file_scenes(store: SceneStore, name: str) -> int:
    entry = store.require_file_entry(name)
    print(f"file id: {entry.id}")
    print("hash     duration (ms)")
    for scene in file_scenes(store, name):
        print(f"{scene.scene_id.hash:08X} {scene.scene_id.duration_ms:8d}")
    return 0


def dispatch(store: SceneStore, args, parser: argparse.ArgumentParser) -> int:
    if args.init:
        store.init()
        print(f"Database ready: {args.db}")
        return 0
    if args.top is not None:
        return run_top(store, args.top)
    if args.files:
        return run_files(store)

    if not args.file:
        parser.print_usage()
        return 1
    name = Path(args.file).stem

    if args.delete:
        delete_file(store, name)
        print(f'"{name}" deleted.')
        return 0
    if args.search:
        return run_search(store, name, args.limit)
    if args.file_scenes:
        return run_file_scenes(store, name)

    if not args.stdin and not os.path.isfile(args.file):
        print(f"Error: {args.file} is not a valid file")
        return 1
    return run_analyze(store, args)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.frame_rate is not None and args.frame_rate <= 0:
        parser.error("--frame-rate must be positive")

    try:
        with open_store(args.db) as store:
            return dispatch(store, args, parser)
    except FileAlreadyAnalyzed as e:
        # Nothing was changed; not a failure
        print(e)
        return 0
    except FileEntryNotFound as e:
        print(e)
        return 1
    except VidupError as e:
        print(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        return 130


if __name__ == '__main__':
    sys.exit(main())
