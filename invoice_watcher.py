#!/usr/bin/env python3
"""
Invoice Folder Watcher - scan-to-folder intake

Watches a folder for new invoice images (scanner output, phone uploads,
saved mail attachments) and submits each one to the extraction API.
The extracted invoice is written next to the moved image as JSON.

Usage:
    python invoice_watcher.py --watch-folder ./invoices-incoming
"""

import argparse
import json
import mimetypes
import time
from datetime import datetime
from pathlib import Path

import requests
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

# Configuration
API_BASE_URL = "http://127.0.0.1:8000"
SUPPORTED_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"}
REQUEST_TIMEOUT = 120


class InvoiceHandler(FileSystemEventHandler):
    """Handles new invoice file events"""

    def __init__(self, watch_folder, processed_folder, failed_folder, api_url=API_BASE_URL):
        self.watch_folder = Path(watch_folder)
        self.processed_folder = Path(processed_folder)
        self.failed_folder = Path(failed_folder)
        self.api_url = api_url.rstrip("/")
        self.processed_files = set()

        # Create folders if they don't exist
        self.processed_folder.mkdir(parents=True, exist_ok=True)
        self.failed_folder.mkdir(parents=True, exist_ok=True)

    def on_created(self, event):
        """Called when a file is created in the watched folder"""
        if event.is_directory:
            return

        file_path = Path(event.src_path)

        if file_path.suffix.lower() not in SUPPORTED_SUFFIXES:
            return

        # Avoid processing the same file multiple times
        if file_path in self.processed_files:
            return

        # Small delay to ensure file is fully written
        time.sleep(1)

        # Check if file still exists (might have been moved)
        if not file_path.exists():
            return

        self.processed_files.add(file_path)
        self.process_invoice(file_path)

    def process_invoice(self, file_path: Path):
        """Submit one image to /api/invoice/parse"""
        print("\n" + "=" * 70)
        print(f"📄 NEW INVOICE DETECTED: {file_path.name}")
        print("=" * 70)
        print(f"Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"Size: {file_path.stat().st_size:,} bytes")
        print()

        mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"

        try:
            print("🔄 Uploading to API...")
            with open(file_path, "rb") as f:
                files = {"file": (file_path.name, f, mime_type)}
                response = requests.post(
                    f"{self.api_url}/api/invoice/parse",
                    files=files,
                    timeout=REQUEST_TIMEOUT,
                )

            if response.status_code == 200 and response.json().get("ok"):
                self.handle_success(file_path, response.json()["result"])
            else:
                print(f"❌ API Error: {response.status_code}")
                print(f"   {response.text}")
                self.handle_error(file_path, f"API returned {response.status_code}: {response.text}")

        except requests.exceptions.Timeout:
            print("⏱️  Request timed out (OCR + extraction can take a while on CPU)")
            self.handle_error(file_path, "Timeout")
        except requests.exceptions.RequestException as e:
            print(f"❌ Error: {str(e)}")
            self.handle_error(file_path, str(e))

    def handle_success(self, file_path: Path, invoice: dict):
        """Move the image to processed/ and store the extracted invoice beside it"""
        totals = invoice.get("totals") or {}
        vendor = invoice.get("vendor") or {}

        print()
        print("📊 EXTRACTION RESULTS:")
        print(f"   Vendor: {vendor.get('name')}")
        print(f"   Invoice #: {invoice.get('invoice_number')}")
        print(f"   Date: {invoice.get('invoice_date')}")
        print(f"   Total: {totals.get('currency') or ''} {totals.get('total')}")
        print(f"   Line items: {len(invoice.get('items') or [])}")

        dest_path = self.processed_folder / file_path.name
        file_path.rename(dest_path)

        json_path = dest_path.with_suffix(".json")
        with open(json_path, "w") as f:
            json.dump(invoice, f, indent=2)

        print(f"\n📁 Moved to: {dest_path}")
        print(f"🧾 Invoice JSON: {json_path}")
        print("=" * 70)
        return json_path

    def handle_error(self, file_path: Path, error_msg: str):
        """Move the image to failed/ with the error next to it"""
        print(f"\n❌ Processing failed: {error_msg}")

        dest_path = self.failed_folder / file_path.name
        file_path.rename(dest_path)
        dest_path.with_suffix(".error.txt").write_text(error_msg)
        print(f"📁 Moved to: {dest_path}")
        print("=" * 70)


def main():
    parser = argparse.ArgumentParser(
        description="Watch a folder for invoice images and extract them automatically"
    )
    parser.add_argument(
        "--watch-folder",
        default="./invoices-incoming",
        help="Folder to watch for new invoices (default: ./invoices-incoming)",
    )
    parser.add_argument(
        "--processed-folder",
        default="./invoices-processed",
        help="Folder for extracted invoices (default: ./invoices-processed)",
    )
    parser.add_argument(
        "--failed-folder",
        default="./invoices-failed",
        help="Folder for invoices that could not be extracted (default: ./invoices-failed)",
    )
    parser.add_argument(
        "--api-url",
        default=API_BASE_URL,
        help=f"API base URL (default: {API_BASE_URL})",
    )

    args = parser.parse_args()

    watch_folder = Path(args.watch_folder)
    watch_folder.mkdir(exist_ok=True)

    event_handler = InvoiceHandler(
        args.watch_folder,
        args.processed_folder,
        args.failed_folder,
        api_url=args.api_url,
    )
    observer = Observer()
    observer.schedule(event_handler, str(watch_folder), recursive=False)
    observer.start()

    print("=" * 70)
    print("🔍 INVOICE WATCHER - AUTOMATIC EXTRACTION")
    print("=" * 70)
    print(f"Watching: {watch_folder.absolute()}")
    print(f"Extracted → {Path(args.processed_folder).absolute()}")
    print(f"Failed → {Path(args.failed_folder).absolute()}")
    print(f"API: {args.api_url}")
    print()
    print("💡 Drop invoice images into the watch folder to process them")
    print("Press Ctrl+C to stop")
    print("=" * 70)
    print()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n\n👋 Stopping watcher...")
        observer.stop()

    observer.join()
    print("✅ Watcher stopped")


if __name__ == "__main__":
    main()
