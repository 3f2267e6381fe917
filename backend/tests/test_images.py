"""
Tests for coral image storage and the images endpoints.
"""

import pytest
from httpx import AsyncClient

from api.main import app
from api.v1.routers.images import get_image_store
from core.errors import NotFoundError, ValidationError
from storage.images import (
    ImageStore,
    category_path,
    generate_secure_filename,
    sanitize_category_name,
    validate_filename,
)


@pytest.fixture
def store(tmp_path):
    uploads = tmp_path / "uploads"
    (uploads / "uncategorized").mkdir(parents=True)
    (uploads / "uncategorized" / "frag.jpg").write_bytes(b"\xff\xd8jpeg")
    (uploads / "corals" / "sps").mkdir(parents=True)
    (uploads / "corals" / "sps" / "acro.png").write_bytes(b"\x89PNG")
    (uploads / "uncategorized" / "notes.txt").write_text("not an image")
    return ImageStore(uploads)


class TestFilenames:
    def test_category_slug(self):
        assert sanitize_category_name("Soft Corals!") == "soft-corals"
        assert category_path("SPS") == "corals/sps"
        assert category_path("Uncategorized") == "uncategorized"

    @pytest.mark.parametrize("filename", ["../secret.jpg", "a/b.jpg", "..\\x.png", ""])
    def test_traversal_rejected(self, filename):
        with pytest.raises(ValidationError):
            validate_filename(filename)

    def test_non_image_rejected(self):
        with pytest.raises(ValidationError, match="Invalid file type"):
            validate_filename("script.sh")

    def test_secure_filename_keeps_extension(self):
        assert generate_secure_filename("My Coral.JPG").endswith(".jpg")


class TestImageStore:
    def test_list_images_marks_usage(self, store):
        images = store.list_images(in_use={"corals/sps/acro.png"})
        by_name = {image["filename"]: image for image in images}
        assert set(by_name) == {"frag.jpg", "acro.png"}
        assert by_name["acro.png"]["category"] == "sps"
        assert by_name["acro.png"]["in_use"] is True
        assert by_name["frag.jpg"]["category"] == "uncategorized"
        assert by_name["frag.jpg"]["type"] == "jpg"

    def test_move_between_categories(self, store):
        new_path = store.move_image("frag.jpg", "uncategorized", "Soft Corals")
        assert new_path == "corals/soft-corals/frag.jpg"
        assert (store.base_dir / new_path).is_file()
        assert not (store.base_dir / "uncategorized" / "frag.jpg").exists()

    def test_move_to_same_category_rejected(self, store):
        with pytest.raises(ValidationError):
            store.move_image("acro.png", "sps", "SPS")

    def test_move_refuses_to_overwrite(self, store):
        (store.base_dir / "corals" / "sps" / "frag.jpg").write_bytes(b"other")
        with pytest.raises(ValidationError, match="already exists"):
            store.move_image("frag.jpg", "uncategorized", "sps")

    def test_missing_source(self, store):
        with pytest.raises(NotFoundError):
            store.move_image("ghost.jpg", "uncategorized", "sps")

    def test_resolve_stays_inside_uploads(self, store):
        with pytest.raises(ValidationError):
            store.resolve("../outside.jpg")

    def test_delete(self, store):
        store.delete_image("frag.jpg", "uncategorized")
        assert not (store.base_dir / "uncategorized" / "frag.jpg").exists()


@pytest.fixture
def store_override(client, store):
    app.dependency_overrides[get_image_store] = lambda: store
    return store


@pytest.mark.asyncio
class TestImagesApi:

    async def test_list_images(self, client: AsyncClient, seeded_db, store_override):
        resp = await client.get("/api/v1/images/")
        assert resp.status_code == 200
        assert {image["relative_path"] for image in resp.json()} == {"uncategorized/frag.jpg", "corals/sps/acro.png"}

    async def test_move_image(self, client: AsyncClient, seeded_db, store_override):
        resp = await client.post("/api/v1/images/uncategorized/frag.jpg/move", json={"target_category": "SPS"})
        assert resp.status_code == 200
        assert resp.json()["new_path"] == "corals/sps/frag.jpg"

    async def test_image_in_use_cannot_move(self, client: AsyncClient, seeded_db, store_override):
        await client.patch(
            f"/api/v1/corals/{seeded_db['acropora'].coral_id}",
            json={"image_url": "corals/sps/acro.png"},
        )
        resp = await client.post("/api/v1/images/sps/acro.png/move", json={"target_category": "LPS"})
        assert resp.status_code == 400
        assert resp.json()["message"] == "Image is currently in use by a coral"

    async def test_delete_missing_image(self, client: AsyncClient, seeded_db, store_override):
        resp = await client.delete("/api/v1/images/uncategorized/ghost.jpg")
        assert resp.status_code == 404
