"""
Tests for profiles, listings, favorites and reports.
"""

import pytest

from badgerswap.directory import (
    create_listing,
    delete_listing,
    find_listing,
    get_display_name,
    get_listing,
    get_listings_by_seller,
    get_user,
    list_listings,
    update_listing,
    upsert_user_profile,
)
from badgerswap.errors import ForbiddenError, NotFoundError, ValidationError
from badgerswap.favorites import add_favorite, get_favorites, is_favorited, remove_favorite
from badgerswap.reports import (
    delete_report,
    get_report,
    get_report_count,
    has_already_reported,
    list_reports,
    submit_report,
    update_report_status,
)


class TestUsers:

    def test_create_then_update_profile(self, db):
        created = upsert_user_profile(db, "u1", "Bucky", "Bucky@Wisc.edu")
        assert created.email == "bucky@wisc.edu"
        assert created.created_at == created.updated_at

        updated = upsert_user_profile(db, "u1", "Bucky Badger", "bucky@wisc.edu", bio="Go Badgers")

        assert updated.name == "Bucky Badger"
        assert updated.bio == "Go Badgers"
        assert updated.updated_at > updated.created_at
        assert get_display_name(db, "u1") == "Bucky Badger"

    def test_outside_email_domain_rejected(self, db):
        with pytest.raises(ValidationError):
            upsert_user_profile(db, "u1", "Bucky", "bucky@gmail.com")

    def test_email_must_be_unique(self, db):
        upsert_user_profile(db, "u1", "Bucky", "bucky@wisc.edu")
        with pytest.raises(ValidationError):
            upsert_user_profile(db, "u2", "Other", "bucky@wisc.edu")

    def test_unknown_user(self, db):
        assert get_display_name(db, "ghost") is None
        with pytest.raises(NotFoundError):
            get_user(db, "ghost")


class TestListings:

    def test_create_and_fetch(self, db):
        listing = create_listing(db, "u2", "  Desk Lamp ", 12.5, category="furniture")

        fetched = get_listing(db, listing.id)

        assert fetched.title == "Desk Lamp"
        assert fetched.seller_id == "u2"
        assert [l.id for l in get_listings_by_seller(db, "u2")] == [listing.id]

    def test_missing_listing(self, db):
        assert find_listing(db, "nope") is None
        with pytest.raises(NotFoundError):
            get_listing(db, "nope")

    @pytest.mark.parametrize("title,price", [("", 1.0), ("Lamp", -1.0)])
    def test_invalid_listing(self, db, title, price):
        with pytest.raises(ValidationError):
            create_listing(db, "u2", title, price)

    def test_browse_newest_first(self, db):
        lamp = create_listing(db, "u2", "Desk Lamp", 12.5, category="furniture")
        book = create_listing(db, "u3", "Calc Textbook", 40.0, category="books")
        chair = create_listing(db, "u2", "Chair", 15.0, category="furniture")

        assert [l.id for l in list_listings(db)] == [chair.id, book.id, lamp.id]
        assert [l.id for l in list_listings(db, category="furniture")] == [chair.id, lamp.id]
        assert [l.id for l in get_listings_by_seller(db, "u2")] == [chair.id, lamp.id]

    def test_partial_update_by_seller(self, db):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5, description="Works")

        updated = update_listing(db, listing.id, "u2", price=10.0)

        assert updated.price == 10.0
        assert updated.title == "Desk Lamp"
        assert updated.description == "Works"

    def test_update_by_other_user_rejected(self, db):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)

        with pytest.raises(ForbiddenError):
            update_listing(db, listing.id, "u1", price=1.0)

        assert get_listing(db, listing.id).price == 12.5

    @pytest.mark.parametrize("changes", [{"title": "  "}, {"price": -5.0}])
    def test_invalid_update(self, db, changes):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)
        with pytest.raises(ValidationError):
            update_listing(db, listing.id, "u2", **changes)

    def test_delete_by_seller_only(self, db):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)

        with pytest.raises(ForbiddenError):
            delete_listing(db, listing.id, "u1")
        delete_listing(db, listing.id, "u2")

        assert find_listing(db, listing.id) is None
        with pytest.raises(NotFoundError):
            delete_listing(db, listing.id, "u2")

    def test_deleted_listing_drops_out_of_favorites(self, db):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)
        add_favorite(db, "u1", listing.id)

        delete_listing(db, listing.id, "u2")

        assert get_favorites(db, "u1") == []


class TestFavorites:

    def test_add_is_idempotent(self, db):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)

        assert add_favorite(db, "u1", listing.id) is True
        assert add_favorite(db, "u1", listing.id) is False
        assert is_favorited(db, "u1", listing.id)
        assert [l.id for l in get_favorites(db, "u1")] == [listing.id]

    def test_newest_first(self, db):
        lamp = create_listing(db, "u2", "Desk Lamp", 12.5)
        bike = create_listing(db, "u3", "Bike", 80.0)
        add_favorite(db, "u1", lamp.id)
        add_favorite(db, "u1", bike.id)

        assert [l.id for l in get_favorites(db, "u1")] == [bike.id, lamp.id]

    def test_remove(self, db):
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)
        add_favorite(db, "u1", listing.id)

        assert remove_favorite(db, "u1", listing.id) is True
        assert remove_favorite(db, "u1", listing.id) is False
        assert get_favorites(db, "u1") == []

    def test_unknown_listing(self, db):
        with pytest.raises(NotFoundError):
            add_favorite(db, "u1", "nope")


class TestReports:

    def test_user_report_lowers_reputation(self, db):
        upsert_user_profile(db, "u2", "Alice", "alice@wisc.edu")

        report = submit_report(db, "u1", "u2", "user", "  No-show at meetup ")

        assert report.status == "pending"
        assert report.reason == "No-show at meetup"
        assert get_user(db, "u2").reputation_score == pytest.approx(4.8)

    def test_listing_report_penalises_seller(self, db):
        upsert_user_profile(db, "u2", "Alice", "alice@wisc.edu")
        listing = create_listing(db, "u2", "Desk Lamp", 12.5)

        submit_report(db, "u1", listing.id, "listing", "Counterfeit", product_title="Desk Lamp")
        submit_report(db, "u3", listing.id, "listing", "Counterfeit")

        assert get_user(db, "u2").reputation_score == pytest.approx(4.6)
        assert get_report_count(db, listing.id) == 2

    def test_reputation_never_negative(self, db):
        user = upsert_user_profile(db, "u2", "Alice", "alice@wisc.edu")
        user.reputation_score = 0.1
        db.commit()

        submit_report(db, "u1", "u2", "user", "Spam")

        assert get_user(db, "u2").reputation_score == 0.0

    def test_report_kept_without_profile(self, db):
        report = submit_report(db, "u1", "ghost", "user", "Spam")
        assert get_report(db, report.id).target_id == "ghost"

    @pytest.mark.parametrize("target_id,target_type,reason", [
        ("", "user", "Spam"),
        ("u2", "thing", "Spam"),
        ("u2", "user", "   "),
    ])
    def test_invalid_report(self, db, target_id, target_type, reason):
        with pytest.raises(ValidationError):
            submit_report(db, "u1", target_id, target_type, reason)

    def test_filters_and_status_change(self, db):
        first = submit_report(db, "u1", "u2", "user", "Spam")
        submit_report(db, "u3", "u2", "user", "Rude")

        assert has_already_reported(db, "u1", "u2")
        assert not has_already_reported(db, "u4", "u2")
        assert [r.id for r in list_reports(db, reporter_id="u1")] == [first.id]

        update_report_status(db, first.id, "resolved", admin_notes="Warned")

        resolved = list_reports(db, status="resolved")
        assert [r.id for r in resolved] == [first.id]
        assert resolved[0].admin_notes == "Warned"
        assert len(list_reports(db, status="pending")) == 1

    def test_invalid_filters(self, db):
        with pytest.raises(ValidationError):
            list_reports(db, status="archived")
        with pytest.raises(ValidationError):
            update_report_status(db, "missing", "archived")

    def test_delete(self, db):
        report = submit_report(db, "u1", "u2", "user", "Spam")
        delete_report(db, report.id)
        with pytest.raises(NotFoundError):
            get_report(db, report.id)


class TestDirectoryRoutes:

    def test_profile_roundtrip(self, client, headers_for):
        response = client.put(
            "/users/me",
            json={"name": "Bucky", "email": "bucky@wisc.edu"},
            headers=headers_for("u1"),
        )
        assert response.status_code == 200

        fetched = client.get("/users/u1", headers=headers_for("u2"))
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "Bucky"

    def test_profile_bad_domain(self, client, headers_for):
        response = client.put(
            "/users/me",
            json={"name": "Bucky", "email": "bucky@example.com"},
            headers=headers_for("u1"),
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_listing_and_favorites(self, client, headers_for):
        listing = client.post(
            "/listings", json={"title": "Desk Lamp", "price": 12.5}, headers=headers_for("u2")
        )
        assert listing.status_code == 201
        listing_id = listing.json()["id"]

        added = client.put(f"/users/me/favorites/{listing_id}", headers=headers_for("u1"))
        assert added.json() == {"status": "added"}
        again = client.put(f"/users/me/favorites/{listing_id}", headers=headers_for("u1"))
        assert again.json() == {"status": "unchanged"}

        favorites = client.get("/users/me/favorites", headers=headers_for("u1")).json()
        assert [l["id"] for l in favorites["data"]] == [listing_id]

        removed = client.delete(f"/users/me/favorites/{listing_id}", headers=headers_for("u1"))
        assert removed.json() == {"status": "removed"}

    def test_favorite_unknown_listing(self, client, headers_for):
        response = client.put("/users/me/favorites/nope", headers=headers_for("u1"))
        assert response.status_code == 404

    def test_conversation_picks_up_listing_title(self, client, headers_for):
        client.put("/users/me", json={"name": "Alice", "email": "alice@wisc.edu"}, headers=headers_for("u2"))
        listing_id = client.post(
            "/listings", json={"title": "Desk Lamp", "price": 12.5}, headers=headers_for("u2")
        ).json()["id"]

        created = client.post(
            "/conversations", json={"seller_id": "u2", "product_id": listing_id}, headers=headers_for("u1")
        ).json()

        assert created["conversation"]["product_title"] == "Desk Lamp"
        assert created["conversation"]["seller_name"] == "Alice"

    def _listing(self, client, headers_for, title, seller="u2", **fields):
        body = {"title": title, "price": 12.5, **fields}
        return client.post("/listings", json=body, headers=headers_for(seller)).json()["id"]

    def test_browse_listings(self, client, headers_for):
        lamp = self._listing(client, headers_for, "Desk Lamp", category="furniture")
        book = self._listing(client, headers_for, "Calc Textbook", seller="u3", category="books")

        browsed = client.get("/listings", headers=headers_for("u1"))
        assert browsed.status_code == 200
        assert browsed.json()["total"] == 2
        assert [l["id"] for l in browsed.json()["data"]] == [book, lamp]

        filtered = client.get("/listings", params={"category": "books"}, headers=headers_for("u1")).json()
        assert [l["id"] for l in filtered["data"]] == [book]

        by_seller = client.get("/users/u2/listings", headers=headers_for("u1")).json()
        assert by_seller["total"] == 1
        assert by_seller["data"][0]["seller_id"] == "u2"

    def test_seller_updates_listing(self, client, headers_for):
        listing_id = self._listing(client, headers_for, "Desk Lamp")

        response = client.patch(f"/listings/{listing_id}", json={"title": "LED Desk Lamp"}, headers=headers_for("u2"))

        assert response.status_code == 200
        assert response.json()["title"] == "LED Desk Lamp"
        assert response.json()["price"] == 12.5

    def test_only_seller_may_update_or_delete(self, client, headers_for):
        listing_id = self._listing(client, headers_for, "Desk Lamp")

        patched = client.patch(f"/listings/{listing_id}", json={"price": 1.0}, headers=headers_for("u1"))
        deleted = client.delete(f"/listings/{listing_id}", headers=headers_for("u1"))

        assert patched.status_code == 403
        assert patched.json()["error_code"] == "FORBIDDEN"
        assert deleted.status_code == 403
        assert client.get(f"/listings/{listing_id}", headers=headers_for("u1")).json()["price"] == 12.5

    def test_seller_deletes_listing(self, client, headers_for):
        listing_id = self._listing(client, headers_for, "Desk Lamp")

        response = client.delete(f"/listings/{listing_id}", headers=headers_for("u2"))

        assert response.status_code == 200
        assert response.json() == {"status": "deleted"}
        assert client.get(f"/listings/{listing_id}", headers=headers_for("u2")).status_code == 404


class TestReportRoutes:

    def _file(self, client, headers_for, reporter="u1"):
        return client.post(
            "/reports",
            json={"target_id": "u2", "target_type": "user", "reason": "Spam"},
            headers=headers_for(reporter),
        )

    def test_file_report(self, client, headers_for):
        response = self._file(client, headers_for)
        assert response.status_code == 201
        assert response.json()["status"] == "pending"

    def test_non_admin_sees_own_reports_only(self, client, headers_for):
        self._file(client, headers_for, reporter="u1")
        self._file(client, headers_for, reporter="u3")

        own = client.get("/reports", headers=headers_for("u1")).json()
        everything = client.get("/reports", headers=headers_for("admin-1")).json()

        assert own["total"] == 1
        assert own["data"][0]["reporter_id"] == "u1"
        assert everything["total"] == 2

    def test_status_change_requires_admin(self, client, headers_for):
        report_id = self._file(client, headers_for).json()["id"]

        forbidden = client.post(
            f"/reports/{report_id}/status", json={"status": "resolved"}, headers=headers_for("u1")
        )
        assert forbidden.status_code == 403
        assert forbidden.json()["error_code"] == "FORBIDDEN"

        allowed = client.post(
            f"/reports/{report_id}/status",
            json={"status": "resolved", "admin_notes": "Warned"},
            headers=headers_for("admin-1"),
        )
        assert allowed.status_code == 200
        assert allowed.json()["status"] == "resolved"
        assert allowed.json()["admin_notes"] == "Warned"

    def test_invalid_status_filter(self, client, headers_for):
        response = client.get("/reports", params={"status": "archived"}, headers=headers_for("admin-1"))
        assert response.status_code == 422
