import os
import tempfile
import unittest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient

from storefront_media.app import create_app
from storefront_media.config import Settings, get_settings
from storefront_media.db import InMemoryDbClient
from storefront_media.dependencies import (
    build_reconciliation_engine,
    get_maintenance_scheduler,
    get_media_service,
    reset_dependencies,
)
from storefront_media.janitor import TempFileJanitor
from storefront_media.media import (
    ALL_IMAGES,
    MAX_IMAGE_SIZE,
    InvalidMediaError,
    MediaOwnerNotFoundError,
    MediaService,
)
from storefront_media.reconcile import MediaCleanupResult, RunStatus
from storefront_media.scheduler import MaintenanceScheduler
from storefront_media.storage import InMemoryStorageClient

PNG = b"\x89PNG\r\n\x1a\nfake"
CDN = "https://cdn.example.com"


class MediaApiTests(unittest.TestCase):
    def setUp(self):
        reset_dependencies()
        self.addCleanup(reset_dependencies)
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        self.staging_dir = os.path.join(self._tmpdir.name, "temp")

        self.settings = Settings(
            storefront_use_in_memory_backends=True,
            scheduler_enabled=False,
            orphan_grace_period_seconds=0,
        )
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        self.scheduler = MaintenanceScheduler(
            build_reconciliation_engine(self.db, self.storage, self.settings),
            TempFileJanitor(self.staging_dir),
        )

        self.app = create_app()
        self.app.dependency_overrides[get_settings] = lambda: self.settings
        self.app.dependency_overrides[get_maintenance_scheduler] = lambda: self.scheduler
        self.app.dependency_overrides[get_media_service] = lambda: MediaService(
            self.db, self.storage, self.staging_dir
        )
        self.client = TestClient(self.app)
        self.product = self.db.create_product("Mug")

    def staged_files(self):
        if not os.path.isdir(self.staging_dir):
            return []
        return os.listdir(self.staging_dir)

    def test_media_cleanup_returns_counts(self):
        self.storage.put_object("img/product/p1/orphan.png")
        self.db.update_product_media(self.product.product_id, add_images=["img/product/p1/gone.png"])

        response = self.client.post("/api/media/cleanup")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "success")
        self.assertEqual(payload["orphanedFilesRemoved"], 1)
        self.assertEqual(payload["danglingReferencesFixed"], 1)
        self.assertEqual(self.storage.keys(), set())

    def test_media_cleanup_skipped_while_running(self):
        lock = self.scheduler.engine.lock
        self.assertTrue(lock.acquire())
        try:
            response = self.client.post("/api/media/cleanup")
        finally:
            lock.release()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "skipped")

    def test_media_cleanup_failure_is_500(self):
        scheduler = MagicMock()
        scheduler.run_media_cleanup.return_value = MediaCleanupResult(
            status=RunStatus.FAILED, reason="ListingError: img/product/"
        )
        self.app.dependency_overrides[get_maintenance_scheduler] = lambda: scheduler

        response = self.client.post("/api/media/cleanup")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"]["reason"], "ListingError: img/product/")

    def test_admin_key_is_enforced_when_configured(self):
        self.settings = Settings(storefront_use_in_memory_backends=True, admin_api_key="secret")

        self.assertEqual(self.client.post("/api/media/cleanup").status_code, 401)
        self.assertEqual(
            self.client.post("/api/media/cleanup/temp", headers={"X-Admin-Key": "nope"}).status_code,
            401,
        )
        response = self.client.post("/api/media/cleanup/temp", headers={"X-Admin-Key": "secret"})
        self.assertEqual(response.status_code, 200)

    def test_temp_cleanup_response(self):
        response = self.client.post("/api/media/cleanup/temp")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "success", "filesDeleted": 0, "sizeFreed": "0 KB"})

    def test_upload_product_images_with_thumbnail(self):
        response = self.client.post(
            f"/api/media/product/{self.product.product_id}/upload",
            files=[
                ("images", ("front.png", PNG, "image/png")),
                ("images", ("side.webp", PNG, "image/webp")),
                ("images", ("thumb.jpg", PNG, "image/jpeg")),
            ],
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(len(payload["imageKeys"]), 2)
        self.assertTrue(payload["thumbnailKey"].startswith("img/product/thumbnail/"))
        self.assertTrue(payload["thumbnailKey"].endswith(".jpg"))
        for key in payload["imageKeys"]:
            self.assertTrue(key.startswith(f"img/product/{self.product.product_id}/"))
        self.assertEqual(
            self.storage.keys(), set(payload["imageKeys"]) | {payload["thumbnailKey"]}
        )
        product = self.db.get_product(self.product.product_id)
        self.assertEqual(product.images, payload["imageKeys"])
        self.assertEqual(product.thumbnail, payload["thumbnailKey"])
        self.assertEqual(self.staged_files(), [])

    def test_upload_rejects_invalid_extension(self):
        response = self.client.post(
            f"/api/media/product/{self.product.product_id}/upload",
            files=[
                ("images", ("ok.png", PNG, "image/png")),
                ("images", ("notes.txt", b"text", "text/plain")),
            ],
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.storage.keys(), set())
        self.assertEqual(self.staged_files(), [])

    def test_upload_to_missing_product_is_404(self):
        response = self.client.post(
            "/api/media/product/missing/thumbnail",
            files={"thumbnail": ("a.png", PNG, "image/png")},
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.storage.keys(), set())
        self.assertEqual(self.staged_files(), [])

    def test_product_thumbnail_replaces_managed_object(self):
        first = self.client.post(
            f"/api/media/product/{self.product.product_id}/thumbnail",
            files={"thumbnail": ("a.png", PNG, "image/png")},
        ).json()["thumbnailKey"]
        second = self.client.post(
            f"/api/media/product/{self.product.product_id}/thumbnail",
            files={"thumbnail": ("b.png", PNG, "image/png")},
        ).json()["thumbnailKey"]

        self.assertNotEqual(first, second)
        self.assertEqual(self.storage.keys(), {second})
        self.assertEqual(self.db.get_product(self.product.product_id).thumbnail, second)

    def test_category_thumbnail_keeps_external_url_object(self):
        category = self.db.create_category("Kitchen", "kitchen")
        self.db.set_category_thumbnail(category.category_id, "https://images.example.com/old.png")

        response = self.client.post(
            f"/api/media/category/{category.category_id}/thumbnail",
            files={"thumbnail": ("cover.jpeg", PNG, "image/jpeg")},
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["category"]["slug"], "kitchen")
        self.assertTrue(
            payload["thumbnailKey"].startswith(f"img/category/thumbnail/{category.category_id}/")
        )
        self.assertEqual(self.storage.keys(), {payload["thumbnailKey"]})

    def _seed_gallery(self):
        keys = [
            f"img/product/{self.product.product_id}/a.png",
            f"img/product/{self.product.product_id}/b.png",
        ]
        for key in keys:
            self.storage.put_object(key)
        self.storage.put_object("img/product/other/c.png")
        self.db.update_product_media(
            self.product.product_id, add_images=keys + ["https://images.example.com/ext.png"]
        )
        return keys

    def test_delete_all_product_images(self):
        keys = self._seed_gallery()

        response = self.client.request(
            "DELETE",
            f"/api/media/product/{self.product.product_id}/delete",
            json={"fileKeys": "__all__"},
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["deletedCount"], 3)
        self.assertEqual(payload["deletedKeys"], keys + ["https://images.example.com/ext.png"])
        self.assertEqual(payload["product"]["images"], [])
        self.assertEqual(self.storage.keys(), {"img/product/other/c.png"})

    def test_delete_unknown_product_images_warns(self):
        keys = self._seed_gallery()

        response = self.client.request(
            "DELETE",
            f"/api/media/product/{self.product.product_id}/delete",
            json={"fileKeys": [keys[0], "img/product/other/c.png"]},
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["deletedKeys"], [keys[0]])
        self.assertIn("img/product/other/c.png", payload["warning"])
        self.assertEqual(
            self.db.get_product(self.product.product_id).images,
            [keys[1], "https://images.example.com/ext.png"],
        )
        self.assertEqual(self.storage.keys(), {keys[1], "img/product/other/c.png"})

    def test_delete_product_images_validates_file_keys(self):
        url = f"/api/media/product/{self.product.product_id}/delete"
        self.assertEqual(self.client.request("DELETE", url, json={"fileKeys": []}).status_code, 400)
        self.assertEqual(
            self.client.request("DELETE", url, json={"fileKeys": "everything"}).status_code, 422
        )
        self.assertEqual(
            self.client.request(
                "DELETE", "/api/media/product/missing/delete", json={"fileKeys": "__all__"}
            ).status_code,
            404,
        )

    def test_delete_managed_product_thumbnail(self):
        key = f"img/product/thumbnail/{self.product.product_id}/t.png"
        self.storage.put_object(key)
        self.db.update_product_media(self.product.product_id, thumbnail=key)

        response = self.client.delete(f"/api/media/product/{self.product.product_id}/thumbnail")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["thumbnailDeleted"])
        self.assertEqual(payload["deletedKey"], key)
        self.assertIsNone(payload["product"]["thumbnail"])
        self.assertEqual(self.storage.keys(), set())

    def test_delete_external_product_thumbnail_only_unsets_reference(self):
        self.storage.put_object("img/product/p1/shared.png")
        self.db.update_product_media(self.product.product_id, thumbnail="img/product/p1/shared.png")

        response = self.client.delete(f"/api/media/product/{self.product.product_id}/thumbnail")

        payload = response.json()
        self.assertFalse(payload["thumbnailDeleted"])
        self.assertTrue(payload["referenceRemoved"])
        self.assertEqual(payload["externalUrl"], "img/product/p1/shared.png")
        self.assertIn("img/product/p1/shared.png", self.storage.keys())
        self.assertIsNone(self.db.get_product(self.product.product_id).thumbnail)

    def test_delete_thumbnail_storage_failure_keeps_reference(self):
        key = f"img/product/thumbnail/{self.product.product_id}/t.png"
        self.storage.put_object(key)
        self.db.update_product_media(self.product.product_id, thumbnail=key)
        self.storage.delete_object = MagicMock(side_effect=ConnectionError("timeout"))

        response = self.client.delete(f"/api/media/product/{self.product.product_id}/thumbnail")

        self.assertEqual(response.status_code, 502)
        self.assertEqual(self.db.get_product(self.product.product_id).thumbnail, key)

    def test_delete_category_thumbnail(self):
        category = self.db.create_category("Kitchen", "kitchen")
        empty = self.client.delete(f"/api/media/category/{category.category_id}/thumbnail")
        self.assertEqual(empty.status_code, 200)
        self.assertFalse(empty.json()["thumbnailDeleted"])
        self.assertFalse(empty.json()["referenceRemoved"])

        key = f"img/category/thumbnail/{category.category_id}/c.png"
        self.storage.put_object(key)
        self.db.set_category_thumbnail(category.category_id, key)
        response = self.client.delete(f"/api/media/category/{category.category_id}/thumbnail")

        self.assertTrue(response.json()["thumbnailDeleted"])
        self.assertIsNone(response.json()["category"]["thumbnail"])
        self.assertEqual(self.storage.keys(), set())
        self.assertEqual(self.client.delete("/api/media/category/missing/thumbnail").status_code, 404)


class MediaServiceTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmpdir.cleanup)
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        self.service = MediaService(self.db, self.storage, self._tmpdir.name, cdn_url=CDN)

    def test_failed_replaced_delete_leaves_orphan_for_reconciliation(self):
        product = self.db.create_product("Mug")
        self.db.update_product_media(product.product_id, thumbnail="img/product/thumbnail/x/old.png")
        self.storage.put_object("img/product/thumbnail/x/old.png")
        self.storage.delete_object = MagicMock(side_effect=ConnectionError("timeout"))

        staged = self.service.stage_upload("new.png", PNG)
        with self.assertLogs("storefront_media.media", level="ERROR"):
            result = self.service.upload_product_thumbnail(product.product_id, staged)

        self.assertEqual(self.db.get_product(product.product_id).thumbnail, result.thumbnail_key)
        self.assertIn("img/product/thumbnail/x/old.png", self.storage.keys())
        self.assertFalse(os.path.exists(staged.path))

    def test_oversized_file_is_rejected(self):
        with self.assertRaises(InvalidMediaError):
            self.service.stage_upload("big.png", b"x" * (MAX_IMAGE_SIZE + 1))

    def test_cdn_url_references_resolve_to_keys(self):
        product = self.db.create_product("Mug")
        old = f"{CDN}/img/product/thumbnail/x/old.png"
        self.db.update_product_media(
            product.product_id, thumbnail=old, add_images=[f"{CDN}/img/product/x/a.png"]
        )
        self.storage.put_object("img/product/thumbnail/x/old.png")
        self.storage.put_object("img/product/x/a.png")

        staged = self.service.stage_upload("new.png", PNG)
        result = self.service.upload_product_thumbnail(product.product_id, staged)
        self.service.delete_product_images(product.product_id, ALL_IMAGES)

        self.assertEqual(self.storage.keys(), {result.thumbnail_key})
        self.assertIsNone(
            self.service.managed_key("https://elsewhere.example/img/product/x/a.png", "img/product/")
        )

    def test_owner_deleted_during_upload_is_not_found(self):
        product = self.db.create_product("Mug")
        self.db.update_product_media = MagicMock(return_value=None)

        staged = self.service.stage_upload("new.png", PNG)
        with self.assertRaises(MediaOwnerNotFoundError):
            self.service.upload_product_thumbnail(product.product_id, staged)

        self.assertEqual(self.storage.keys(), set())
        self.assertFalse(os.path.exists(staged.path))

    def test_category_deleted_during_upload_is_not_found(self):
        category = self.db.create_category("Kitchen", "kitchen")
        self.db.set_category_thumbnail = MagicMock(return_value=None)

        staged = self.service.stage_upload("cover.png", PNG)
        with self.assertRaises(MediaOwnerNotFoundError):
            self.service.upload_category_thumbnail(category.category_id, staged)

        self.assertEqual(self.storage.keys(), set())


if __name__ == "__main__":
    unittest.main()
