import re
import unittest

from storefront_media.media_keys import (
    CATEGORY_THUMBNAIL_FIELD,
    CATEGORY_THUMBNAIL_PREFIX,
    MANAGED_PREFIXES,
    PRODUCT_IMAGE_PREFIX,
    PRODUCT_THUMBNAIL_FIELD,
    PRODUCT_THUMBNAIL_PREFIX,
    build_key,
    generate_file_name,
    is_managed_key,
    key_from_url,
    listing_prefixes,
    new_media_key,
)


class MediaKeyTests(unittest.TestCase):
    def test_listing_prefixes_collapses_nested_prefixes(self):
        self.assertEqual(
            listing_prefixes(MANAGED_PREFIXES),
            [CATEGORY_THUMBNAIL_PREFIX, PRODUCT_IMAGE_PREFIX],
        )

    def test_generate_file_name_embeds_owner_timestamp_and_suffix(self):
        name = generate_file_name("abc123", ".PNG")
        self.assertRegex(name, r"^abc123_\d{13}_[0-9a-f]{8}\.png$")
        self.assertNotEqual(name, generate_file_name("abc123", "png"))

    def test_build_key_rejects_unmanaged_prefix(self):
        self.assertEqual(
            build_key(PRODUCT_THUMBNAIL_PREFIX, "p1", "p1_1_ab.png"),
            "img/product/thumbnail/p1/p1_1_ab.png",
        )
        with self.assertRaises(ValueError):
            build_key("data/", "p1", "x.png")

    def test_new_media_key_keeps_extension(self):
        key = new_media_key(CATEGORY_THUMBNAIL_PREFIX, "c9", "photo.webp")
        self.assertTrue(re.match(r"^img/category/thumbnail/c9/c9_\d+_[0-9a-f]{8}\.webp$", key))

    def test_is_managed_key_ignores_external_urls(self):
        self.assertTrue(is_managed_key("img/product/p1/a.png"))
        self.assertFalse(is_managed_key("https://cdn.example.com/img/product/p1/a.png"))
        self.assertFalse(is_managed_key(None))
        self.assertFalse(is_managed_key("data/banner.png"))

    def test_reference_fields_accept_their_prefixes_only(self):
        self.assertTrue(PRODUCT_THUMBNAIL_FIELD.accepts("img/product/thumbnail/p1/a.png"))
        self.assertTrue(PRODUCT_THUMBNAIL_FIELD.accepts("img/product/p1/a.png"))
        self.assertFalse(PRODUCT_THUMBNAIL_FIELD.accepts("img/category/thumbnail/c1/a.png"))
        self.assertFalse(CATEGORY_THUMBNAIL_FIELD.accepts("img/product/p1/a.png"))

    def test_key_from_url_strips_cdn_base(self):
        self.assertEqual(
            key_from_url("https://cdn.example.com/img/product/p1/a.png", "https://cdn.example.com/"),
            "img/product/p1/a.png",
        )
        self.assertEqual(key_from_url("img/product/p1/a.png", None), "img/product/p1/a.png")


if __name__ == "__main__":
    unittest.main()
