"""Tests for the image and headshot record store."""

import pytest

import headshot_store as store
from db_store import IntegrityError


def _generated_image(user_id: str) -> store.Image:
    return store.create_image(
        user_id, store.IMAGE_TYPE_GENERATED, "https://blobs.test/generated/g.png",
        storage_path="generated/g.png", content_type="image/png",
    )


class TestImages:
    """Image rows are scoped to their owner."""

    def test_create_and_get(self, user):
        image = store.create_image(user, store.IMAGE_TYPE_UPLOADED, "https://blobs.test/x.jpg")
        fetched = store.get_image(image.id, user)
        assert fetched.url == "https://blobs.test/x.jpg"
        assert fetched.type == store.IMAGE_TYPE_UPLOADED

    def test_unknown_type_rejected(self, user):
        with pytest.raises(ValueError):
            store.create_image(user, "thumbnail", "https://blobs.test/x.jpg")

    def test_get_other_users_image_not_found(self, uploaded_image, other_user):
        with pytest.raises(store.NotFoundError):
            store.get_image(uploaded_image.id, other_user)

    def test_get_images_returns_owned_subset(self, uploaded_image, other_user):
        foreign = store.create_image(other_user, store.IMAGE_TYPE_UPLOADED, "https://blobs.test/b.jpg")
        found = store.get_images(uploaded_image.user_id, [uploaded_image.id, foreign.id, "missing"])
        assert [image.id for image in found] == [uploaded_image.id]

    def test_list_filters_by_type(self, user, uploaded_image):
        generated = _generated_image(user)
        assert {image.id for image in store.list_images(user)} == {uploaded_image.id, generated.id}
        assert [image.id for image in store.list_images(user, store.IMAGE_TYPE_GENERATED)] == [generated.id]

    def test_list_excludes_other_users(self, uploaded_image, other_user):
        assert store.list_images(other_user) == []

    def test_delete_returns_deleted_image(self, user, uploaded_image):
        deleted = store.delete_image(uploaded_image.id, user)
        assert deleted.storage_path == "uploaded/a.jpg"
        with pytest.raises(store.NotFoundError):
            store.get_image(uploaded_image.id, user)

    def test_delete_other_users_image_not_found(self, uploaded_image, other_user):
        with pytest.raises(store.NotFoundError):
            store.delete_image(uploaded_image.id, other_user)
        assert store.get_image(uploaded_image.id, uploaded_image.user_id)

    def test_delete_result_of_completed_headshot_refused(self, user, uploaded_image):
        headshot = store.create_headshot(user, [uploaded_image.id])
        generated = _generated_image(user)
        assert store.start_processing(headshot.id, user)
        assert store.complete_headshot(headshot.id, user, generated.id)

        with pytest.raises(store.ImageInUseError):
            store.delete_image(generated.id, user)

    def test_delete_source_image_unlinks_it(self, user, uploaded_image):
        headshot = store.create_headshot(user, [uploaded_image.id])
        store.delete_image(uploaded_image.id, user)
        assert store.get_headshot_source_images(headshot.id, user) == []


class TestHeadshotRecords:
    """Creating and reading headshots."""

    def test_create_starts_pending(self, user, uploaded_image):
        headshot = store.create_headshot(
            user, [uploaded_image.id], {"background": "grey"}, request_key="k1"
        )
        fetched = store.get_headshot(headshot.id, user)
        assert fetched.status == store.STATUS_PENDING
        assert fetched.preferences == {"background": "grey"}
        assert fetched.request_key == "k1"
        assert fetched.generated_image_id is None
        assert fetched.paid is False
        assert not fetched.is_terminal

    def test_source_images_linked(self, user, uploaded_image):
        headshot = store.create_headshot(user, [uploaded_image.id, uploaded_image.id])
        sources = store.get_headshot_source_images(headshot.id, user)
        assert [image.id for image in sources] == [uploaded_image.id]

    def test_other_user_cannot_read(self, user, other_user):
        headshot = store.create_headshot(user)
        with pytest.raises(store.NotFoundError):
            store.get_headshot(headshot.id, other_user)
        assert store.list_headshots(other_user) == []

    def test_list_includes_generated_image(self, user, uploaded_image):
        headshot = store.create_headshot(user, [uploaded_image.id])
        generated = _generated_image(user)
        store.start_processing(headshot.id, user)
        store.complete_headshot(headshot.id, user, generated.id)

        listed = store.list_headshots(user)
        assert len(listed) == 1
        assert listed[0].generated_image.url == generated.url

        single = store.get_headshot_with_generated_image(headshot.id, user)
        assert single.to_dict()["generated_image"]["id"] == generated.id

    def test_pending_headshot_has_no_generated_image(self, user):
        headshot = store.create_headshot(user)
        assert store.get_headshot_with_generated_image(headshot.id, user).generated_image is None


class TestHeadshotTransitions:
    """Status transitions are guarded by the current status."""

    def test_update_unknown_field_rejected(self, user):
        headshot = store.create_headshot(user)
        with pytest.raises(ValueError):
            store.update_headshot(headshot.id, user, {"user_id": "someone-else"})

    def test_update_missing_headshot_raises(self, user):
        with pytest.raises(store.NotFoundError):
            store.update_headshot("missing", user, {"prompt": "x"})

    def test_update_other_users_headshot_raises(self, user, other_user):
        headshot = store.create_headshot(user)
        with pytest.raises(store.NotFoundError):
            store.update_headshot(headshot.id, other_user, {"prompt": "x"})

    def test_start_processing_only_once(self, user):
        headshot = store.create_headshot(user)
        assert store.start_processing(headshot.id, user)
        assert not store.start_processing(headshot.id, user)
        assert store.get_headshot(headshot.id, user).status == store.STATUS_PROCESSING

    def test_complete_requires_processing(self, user):
        headshot = store.create_headshot(user)
        generated = _generated_image(user)
        assert not store.complete_headshot(headshot.id, user, generated.id)
        assert store.get_headshot(headshot.id, user).status == store.STATUS_PENDING

    def test_completed_is_terminal(self, user):
        headshot = store.create_headshot(user)
        generated = _generated_image(user)
        store.start_processing(headshot.id, user)
        store.complete_headshot(headshot.id, user, generated.id)

        assert not store.fail_headshot(headshot.id, user, "late failure")
        assert not store.set_step(headshot.id, user, "analysis")
        assert not store.set_prompt(headshot.id, user, "late prompt")
        fetched = store.get_headshot(headshot.id, user)
        assert fetched.status == store.STATUS_COMPLETED
        assert fetched.error is None

    def test_failed_is_terminal(self, user):
        headshot = store.create_headshot(user)
        generated = _generated_image(user)
        assert store.fail_headshot(headshot.id, user, "boom", step="analysis")

        assert not store.start_processing(headshot.id, user)
        assert not store.complete_headshot(headshot.id, user, generated.id)
        assert not store.fail_headshot(headshot.id, user, "second failure")
        fetched = store.get_headshot(headshot.id, user)
        assert fetched.status == store.STATUS_FAILED
        assert fetched.error == "boom"
        assert fetched.step == "analysis"
        assert fetched.generated_image_id is None

    def test_completed_without_image_violates_schema(self, user):
        headshot = store.create_headshot(user)
        with pytest.raises(IntegrityError):
            store.update_headshot(headshot.id, user, {"status": store.STATUS_COMPLETED})

    def test_image_on_pending_headshot_violates_schema(self, user):
        headshot = store.create_headshot(user)
        generated = _generated_image(user)
        with pytest.raises(IntegrityError):
            store.update_headshot(headshot.id, user, {"generated_image_id": generated.id})

    def test_mark_paid_in_any_status(self, user):
        headshot = store.create_headshot(user)
        store.fail_headshot(headshot.id, user, "boom")
        assert store.mark_headshot_paid(headshot.id, user)
        assert store.get_headshot(headshot.id, user).paid is True


class TestHeadshotQueries:

    def test_find_active_headshot_by_request_key(self, user):
        headshot = store.create_headshot(user, request_key="same")
        assert store.find_active_headshot(user, "same").id == headshot.id
        assert store.find_active_headshot(user, "other") is None

        store.fail_headshot(headshot.id, user, "boom")
        assert store.find_active_headshot(user, "same") is None

    def test_find_active_headshot_scoped_to_owner(self, user, other_user):
        store.create_headshot(user, request_key="same")
        assert store.find_active_headshot(other_user, "same") is None

    def test_find_stale_headshots(self, user):
        active = store.create_headshot(user)
        done = store.create_headshot(user)
        store.fail_headshot(done.id, user, "boom")

        assert store.find_stale_headshots("1970-01-01T00:00:00+00:00") == []
        stale = store.find_stale_headshots("9999-01-01T00:00:00+00:00")
        assert [headshot.id for headshot in stale] == [active.id]
