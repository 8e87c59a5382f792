#!/usr/bin/env python3
"""
Resume an interrupted upload across process restarts.

Run the script, press Ctrl+C part way through, then run it again with the
same arguments: the second run finds the upload in the fingerprint database,
asks the server for its offset and continues from there.
"""

import logging
import os
import sys

from upload_engine import (
    SQLiteFingerprintStore,
    TusTransport,
    UploadCallbacks,
    UploadSession,
    UploadState,
)


def progress_callback(session, event):
    """Display upload progress."""
    bar_length = 50
    filled = int(bar_length * event.percentage / 100)
    bar = "=" * filled + "-" * (bar_length - filled)
    print(
        f"\rProgress: [{bar}] {event.percentage:.1f}% "
        f"({event.bytes_acknowledged}/{event.source_size} bytes)",
        end="",
    )
    if event.bytes_acknowledged == event.source_size:
        print()


def main():
    """Run the resume example."""
    if len(sys.argv) < 3:
        print("Usage: python resume_example.py <server_url> <file_path>")
        print("Example: python resume_example.py http://localhost:8080/files /path/to/file.bin")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    server_url = sys.argv[1]
    file_path = sys.argv[2]
    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    transport = TusTransport(server_url)
    session = UploadSession.create(
        file_path,
        transport,
        metadata={"filename": os.path.basename(file_path)},
        store=SQLiteFingerprintStore(".upload_fingerprints.db"),
        callbacks=UploadCallbacks(on_progress=progress_callback),
    )

    print(f"Uploading {file_path} ({session.task.source_size} bytes, chunks of {session.task.chunk_size})")
    session.start()
    try:
        session.wait()
    except KeyboardInterrupt:
        session.pause()
        session.wait()
        print(f"\nPaused at {session.bytes_acknowledged} bytes; run again to resume.")
        sys.exit(130)

    if session.state is UploadState.COMPLETED:
        print(f"Upload complete: {session.final_location}")
    else:
        print(f"Upload {session.state.value}: {session.last_error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
