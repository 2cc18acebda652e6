import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import httpx

from app.catalog import BUILTIN_CATALOG, CATALOG_TTL_SECONDS, ExtensionCatalog, cache_expired, empty_cache, refresh_cache
from stack_spec import StackSpecError


REMOTE_ITEM = {"id": "calendar-sync", "name": "Calendar", "type": "plugin", "pluginId": "@acme/calendar-sync", "risk": "medium"}


class TestCatalogCache(unittest.TestCase):
    def test_cache_expiry_is_pure(self) -> None:
        self.assertTrue(cache_expired(None, 100.0))
        self.assertFalse(cache_expired(100.0, 100.0 + CATALOG_TTL_SECONDS - 1))
        self.assertTrue(cache_expired(100.0, 100.0 + CATALOG_TTL_SECONDS))

    def test_refresh_filters_invalid_items(self) -> None:
        items = [REMOTE_ITEM, {"id": "Bad Id", "type": "plugin", "risk": "low"}, {"id": "x", "type": "plugin", "pluginId": "../x", "risk": "low"}, "junk"]
        cache, stale = refresh_cache(empty_cache(), 50.0, lambda: items)
        self.assertFalse(stale)
        self.assertEqual(cache, {"items": [REMOTE_ITEM], "fetchedAt": 50.0})

    def test_fresh_cache_is_not_refetched(self) -> None:
        def fetch():
            raise AssertionError("fetched")

        cache = {"items": [REMOTE_ITEM], "fetchedAt": 50.0}
        self.assertEqual(refresh_cache(cache, 60.0, fetch), (cache, False))

    def test_failed_fetch_falls_back_to_stale_items(self) -> None:
        def fetch():
            raise httpx.ConnectError("unreachable")

        cache = {"items": [REMOTE_ITEM], "fetchedAt": 50.0}
        result, stale = refresh_cache(cache, 50.0 + CATALOG_TTL_SECONDS, fetch)
        self.assertTrue(stale)
        self.assertEqual(result["items"], [REMOTE_ITEM])
        with self.assertRaises(httpx.ConnectError):
            refresh_cache(empty_cache(), 0.0, fetch)


class TestExtensionCatalog(unittest.TestCase):
    def test_builtin_only(self) -> None:
        listing = ExtensionCatalog().list_items()
        self.assertEqual([item["id"] for item in listing["items"]], [item["id"] for item in BUILTIN_CATALOG])
        self.assertFalse(listing["stale"])

    def test_remote_items_are_appended(self) -> None:
        catalog = ExtensionCatalog(fetcher=lambda: [REMOTE_ITEM, dict(BUILTIN_CATALOG[0], name="dup")], clock=lambda: 10.0)
        ids = [item["id"] for item in catalog.list_items()["items"]]
        self.assertEqual(ids.count("policy-telemetry"), 1)
        self.assertEqual(ids[-1], "calendar-sync")

    def test_unreachable_feed_without_cache_lists_builtins(self) -> None:
        def fetch():
            raise httpx.ConnectError("unreachable")

        listing = ExtensionCatalog(fetcher=fetch).list_items()
        self.assertEqual(len(listing["items"]), len(BUILTIN_CATALOG))
        self.assertIsNone(listing["fetchedAt"])

    def test_resolve_install(self) -> None:
        catalog = ExtensionCatalog()
        self.assertEqual(catalog.resolve_install("memory-guard"), {"id": "memory-guard", "type": "plugin", "pluginId": "./plugins/memory-guard.ts"})
        with self.assertRaises(StackSpecError) as ctx:
            catalog.resolve_install("nope")
        self.assertEqual(ctx.exception.code, "extension_not_found")


if __name__ == "__main__":
    unittest.main()
