#!/usr/bin/env python3
"""Upload several files to a TUS server through an UploadQueue."""

import json
import logging
import os
import sys

from upload_engine import EngineConfig, UploadCallbacks, UploadQueue, UploadState


def on_progress(session, event):
    """Display upload progress."""
    filename = session.task.metadata.get("filename", session.id)
    eta = f"{event.eta_seconds:.0f}s" if event.eta_seconds != float("inf") else "?"
    print(
        f"{filename}: {event.percentage:5.1f}% "
        f"({event.bytes_acknowledged}/{event.source_size} bytes, "
        f"{event.upload_speed_mbps:.2f} MB/s, ETA {eta})"
    )


def on_completed(session, final_location):
    print(f"{session.task.metadata.get('filename')}: done -> {final_location}")


def on_failed(session, error_class, message):
    print(f"{session.task.metadata.get('filename')}: failed ({error_class.value}): {message}")


def main():
    """Run the queue example."""
    if len(sys.argv) < 3:
        print("Usage: python queue_example.py <server_url> <file_path> [<file_path> ...]")
        print("Example: python queue_example.py http://localhost:8080/files a.bin b.bin c.bin")
        print("Options are read from UPLOAD_ENGINE_OPTIONS as JSON, e.g.")
        print('  UPLOAD_ENGINE_OPTIONS=\'{"parallel_limit": 2, "retry_delays": [0, 1000]}\'')
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    server_url = sys.argv[1]
    file_paths = sys.argv[2:]
    options = json.loads(os.environ.get("UPLOAD_ENGINE_OPTIONS", "{}"))
    config = EngineConfig.from_dict(options)

    callbacks = UploadCallbacks(
        on_progress=on_progress, on_completed=on_completed, on_failed=on_failed
    )

    with UploadQueue.for_endpoint(server_url, config=config, callbacks=callbacks) as queue:
        for file_path in file_paths:
            if not os.path.exists(file_path):
                print(f"Skipping missing file: {file_path}")
                continue
            queue.submit_file(file_path)

        print(f"Uploading {len(queue)} files, {queue.parallel_limit} at a time")
        try:
            queue.wait()
        except KeyboardInterrupt:
            # Leaving the block shuts the queue down, cancelling what is left
            print("\nInterrupted, cancelling outstanding uploads")

        failed = [s for s in queue.tasks if s.state is UploadState.FAILED]

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
