"""Command line front-end: ``python -m s3_engine``."""
import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

from botocore.exceptions import BotoCoreError

from .cancellation import OperationCancelledError
from .client import PresignedPost
from .controller import NotConnectedError, S3Controller
from .errors import S3Error
from .models import ActiveMultipartUpload
from .utils import (
    compose_s3_key,
    folder_prefix,
    format_last_modified,
    format_size,
    key_basename,
    load_package_info,
    parse_size_bytes,
)

LOGGER = logging.getLogger("s3_engine")


def size_argument(value: str) -> int:
    size = parse_size_bytes(value)
    if size is None:
        raise argparse.ArgumentTypeError(f"invalid size '{value}' (try 8MB)")
    return size


def build_parser() -> argparse.ArgumentParser:
    info = load_package_info()
    parser = argparse.ArgumentParser(prog="python -m s3_engine", description=info.summary)
    parser.add_argument("--version", action="version", version=f"%(prog)s {info.version or 'dev'}")
    parser.add_argument("--profile", required=True, help="saved connection profile to use")
    parser.add_argument("--bucket", help="bucket to operate on (defaults to the profile's bucket)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log every request at DEBUG level")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("buckets", help="list buckets")

    ls = commands.add_parser("ls", help="list one folder level")
    ls.add_argument("prefix", nargs="?", default="")
    ls.add_argument("--max-keys", type=int)

    rm = commands.add_parser("rm", help="delete an object or, with -r, a whole prefix")
    rm.add_argument("key")
    rm.add_argument("-r", "--recursive", action="store_true")

    mv = commands.add_parser("mv", help="rename every key under a prefix")
    mv.add_argument("old_prefix")
    mv.add_argument("new_prefix")

    upload = commands.add_parser("upload", help="upload a local file or folder")
    upload.add_argument("source")
    upload.add_argument("key", help="object key, or a prefix ending in / (always a prefix for folders)")
    upload.add_argument("--content-type")
    upload.add_argument("--resume", action="store_true", help="reuse parts of an interrupted upload")
    upload.add_argument("--part-size", type=size_argument, help="multipart part size, e.g. 8MB")

    download = commands.add_parser("download", help="download an object or, with -r, a whole prefix")
    download.add_argument("key")
    download.add_argument("destination", nargs="?")
    download.add_argument("-r", "--recursive", action="store_true")

    uploads = commands.add_parser("uploads", help="list unfinished multipart uploads")
    uploads.add_argument("prefix", nargs="?", default="")

    abort = commands.add_parser("abort", help="abort unfinished multipart uploads")
    abort.add_argument("prefix", nargs="?", default="")
    abort.add_argument("--upload-id", help="abort only this upload")

    presign = commands.add_parser("presign", help="print a presigned URL")
    presign.add_argument("key")
    presign.add_argument("--method", choices=("get", "put", "post"), default="get")
    presign.add_argument("--expires", type=int, help="validity in seconds")
    presign.add_argument("--content-type")
    presign.add_argument("--content-disposition")
    presign.add_argument("--max-size", type=int, help="POST only: maximum upload size in bytes")
    return parser


def _print_progress(completed: int, total: int) -> None:
    if total:
        print(f"\r{completed}/{total}", end="", file=sys.stderr, flush=True)


async def run(args: argparse.Namespace, controller: S3Controller) -> int:
    await controller.connect_with_profile(args.profile, bucket=args.bucket)

    if args.command == "buckets":
        for name in await controller.refresh_buckets():
            print(name)
    elif args.command == "ls":
        listing = await controller.list_directory(folder_prefix(args.prefix), max_keys=args.max_keys)
        for obj in listing.objects:
            if obj.is_folder:
                print(f"{'DIR':>10}  {'':19}  {obj.key}")
            else:
                print(f"{format_size(obj.size):>10}  {format_last_modified(obj.last_modified):19}  {obj.key}")
        if listing.has_more:
            print(f"... more entries, continuation token: {listing.continuation_token}")
    elif args.command == "rm":
        if args.recursive:
            count = await controller.delete_prefix(folder_prefix(args.key), progress=_print_progress)
            print(f"\nDeleted {count} objects")
        else:
            await controller.delete_object(args.key)
    elif args.command == "mv":
        count = await controller.rename_prefix(
            folder_prefix(args.old_prefix), folder_prefix(args.new_prefix), progress=_print_progress
        )
        print(f"\nRenamed {count} objects")
    elif args.command == "upload":
        if args.part_size:
            controller.settings = replace(controller.settings, part_size=args.part_size)
        source = Path(args.source)
        if source.is_dir():
            keys = await controller.upload_folder(source, args.key, progress=_print_progress)
            print(f"\nUploaded {len(keys)} files under {folder_prefix(args.key) or '/'}")
            return 0
        key = compose_s3_key(args.key, source.name) if args.key.endswith("/") else args.key
        etag = await controller.upload_object(
            key,
            source,
            content_type=args.content_type,
            progress=_print_progress,
            resume=args.resume,
        )
        print(f"\nUploaded {key} (ETag {etag or '-'})")
    elif args.command == "download":
        destination = args.destination or key_basename(args.key)
        if args.recursive:
            paths = await controller.download_folder(args.key, destination, progress=_print_progress)
            print(f"\nDownloaded {len(paths)} files to {destination}")
            return 0
        size = await controller.download_object(args.key, destination, progress=_print_progress)
        print(f"\nDownloaded {format_size(size)} to {destination}")
    elif args.command == "uploads":
        for upload in await controller.list_multipart_uploads(args.prefix):
            print(f"{upload.upload_id}  {format_last_modified(upload.initiated)}  {upload.key}")
    elif args.command == "abort":
        targets: list[ActiveMultipartUpload] = [
            upload
            for upload in await controller.list_multipart_uploads(args.prefix)
            if args.upload_id is None or upload.upload_id == args.upload_id
        ]
        failures = await controller.abort_uploads(targets)
        for upload, exc in failures:
            print(f"Failed to abort {upload.key} ({upload.upload_id}): {exc}", file=sys.stderr)
        print(f"Aborted {len(targets) - len(failures)} of {len(targets)} uploads")
        return 1 if failures else 0
    elif args.command == "presign":
        result = controller.generate_presigned_url(
            args.key,
            method=args.method,
            expires_in=args.expires,
            content_type=args.content_type,
            content_disposition=args.content_disposition,
            max_size=args.max_size,
        )
        if isinstance(result, PresignedPost):
            print(result.url)
            for name, value in result.fields.items():
                print(f"  {name}={value}")
        else:
            print(result)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    controller = S3Controller()
    try:
        return asyncio.run(run(args, controller))
    except OperationCancelledError as exc:
        print(f"\n{exc}", file=sys.stderr)
        return 130
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except (S3Error, NotConnectedError, BotoCoreError, ValueError, OSError) as exc:
        LOGGER.debug("Command failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
