"""Flat-file JSON store — users.json, orders.json, products.json, reviews.json.

Responsible for:
- Loading a JSON array from the data directory (empty fallback if missing)
- Crash-safe writes: temp file in the same directory, fsync, atomic rename
- Serialising read-modify-write cycles with one lock per file
- The in-memory product catalog (id / slug indexes, explicit reload)

Lock order when a caller holds more than one file:
reviews -> orders -> users -> products.
"""

import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager

from flask import current_app

from korelia.errors import PersistenceFailed

logger = logging.getLogger(__name__)

USERS = "users"
ORDERS = "orders"
PRODUCTS = "products"
REVIEWS = "reviews"


class JsonStore:
    """Read/write whole JSON arrays stored as <data_dir>/<name>.json."""

    def __init__(self, data_dir):
        self.data_dir = data_dir
        self._locks = {}
        self._locks_guard = threading.Lock()

    def path(self, name):
        return os.path.join(self.data_dir, f"{name}.json")

    def lock(self, name):
        """Return the re-entrant lock guarding one data file."""
        with self._locks_guard:
            if name not in self._locks:
                self._locks[name] = threading.RLock()
            return self._locks[name]

    def read(self, name, fallback=None):
        """Parse the file. A missing file yields a copy of `fallback` ([] by default).

        Any other I/O or JSON error propagates.
        """
        try:
            with open(self.path(name), encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return copy.deepcopy(fallback) if fallback is not None else []

    def write(self, name, data):
        """Atomically replace the file with `data` serialised as pretty JSON.

        Raises PersistenceFailed if anything fails before the rename; the
        previous file content is left as it was.
        """
        target = self.path(name)
        os.makedirs(self.data_dir, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{name}.", suffix=".tmp", dir=self.data_dir
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            logger.error(f"Failed to write {target}: {e}")
            raise PersistenceFailed(f"Could not write {name}.json: {e}") from e

    @contextmanager
    def mutate(self, name, fallback=None):
        """Lock the file, yield its records, write them back on a clean exit.

        Nothing is written if the block raises or leaves the records
        unchanged.
        """
        with self.lock(name):
            records = self.read(name, fallback)
            before = copy.deepcopy(records)
            yield records
            if records != before:
                self.write(name, records)


class ProductCatalog:
    """In-memory product list with id/slug indexes over products.json."""

    def __init__(self, store):
        self.store = store
        self._products = []
        self._by_id = {}
        self._by_slug = {}
        self._lock = threading.Lock()

    def reload(self):
        """Re-read products.json. On a read error the previous catalog is kept."""
        try:
            products = self.store.read(PRODUCTS)
        except (OSError, ValueError) as e:
            logger.error(f"Product catalog reload failed: {e}")
            return
        with self._lock:
            self._products = products
            self._by_id = {str(p.get("id")): p for p in products}
            self._by_slug = {str(p.get("slug")): p for p in products}
        logger.info(f"Product catalog loaded ({len(products)} products)")

    def all(self):
        return list(self._products)

    def get(self, product_id):
        if product_id is None:
            return None
        return self._by_id.get(str(product_id))

    def by_slug(self, slug):
        if slug is None:
            return None
        return self._by_slug.get(str(slug))


def init_store(app):
    """Create the app's store + catalog and register them on app.extensions."""
    store = JsonStore(app.config["DATA_DIR"])
    catalog = ProductCatalog(store)
    app.extensions["json_store"] = store
    app.extensions["product_catalog"] = catalog
    return store, catalog


def get_store():
    return current_app.extensions["json_store"]


def get_catalog():
    return current_app.extensions["product_catalog"]
