import pytest

from trustgate.core.device.registry import DeviceRecord
from trustgate.core.errors import ConflictError, NotFoundError, PolicyViolation, ValidationError
from trustgate.core.requests.change_request import RequestStatus

pytestmark = pytest.mark.integration


@pytest.fixture()
def bound_user(store, extractor, signals, clock):
    """Account 'u1' bound to the laptop."""
    user = store.add_user("u1", "alice", email="alice@example.com")
    fp = extractor.extract("u1", signals())
    user.register_device(DeviceRecord.from_fingerprint(fp, clock()))
    store.save_user(user)
    return store.get_user("u1")


@pytest.fixture()
def phone_fp(extractor, phone_signals):
    return extractor.extract("u1", phone_signals)


def test_create_pending_request(lifecycle, bound_user, phone_fp, clock):
    request = lifecycle.create("u1", phone_fp, "Lost my laptop")

    assert request.status is RequestStatus.PENDING
    assert request.current_device_id == bound_user.current_device_id
    assert request.new_device_id == phone_fp.device_id
    assert request.new_device_info.platform == "iOS"
    assert request.current_device_info.platform == "Windows"
    assert request.requested_at == clock()
    assert request.reason == "Lost my laptop"
    assert lifecycle.get(request.id) == request


def test_default_reason(lifecycle, bound_user, phone_fp):
    assert lifecycle.create("u1", phone_fp).reason == "User requested device change"


def test_current_device_sentinel_without_device(store, lifecycle, phone_fp):
    store.add_user("u1", "alice")
    request = lifecycle.create("u1", phone_fp)
    assert request.current_device_id == "none"
    assert request.to_dict()["currentDeviceInfo"] == {}


def test_only_one_pending_request_per_device(lifecycle, bound_user, phone_fp):
    lifecycle.create("u1", phone_fp)
    with pytest.raises(ConflictError):
        lifecycle.create("u1", phone_fp)
    assert lifecycle.list().total == 1


def test_registered_device_cannot_be_requested(lifecycle, bound_user, extractor, signals):
    with pytest.raises(ConflictError):
        lifecycle.create("u1", extractor.extract("u1", signals()))


def test_unknown_user(lifecycle, phone_fp):
    with pytest.raises(NotFoundError):
        lifecycle.create("ghost", phone_fp)


def test_inactive_account_cannot_request(store, lifecycle, bound_user, phone_fp):
    store.set_user_active("u1", False)
    with pytest.raises(NotFoundError):
        lifecycle.create("u1", phone_fp)
    assert lifecycle.list(status="all").total == 0


def test_login_default_reason(lifecycle, bound_user, phone_fp):
    request = lifecycle.create("u1", phone_fp, default_reason="Login attempt from new device")
    assert request.reason == "Login attempt from new device"


def test_reason_too_long(lifecycle, bound_user, phone_fp):
    with pytest.raises(ValidationError):
        lifecycle.create("u1", phone_fp, "x" * 501)


def test_approve_swaps_current_device(store, lifecycle, bound_user, phone_fp, clock):
    old_device = bound_user.current_device_id
    request = lifecycle.create("u1", phone_fp)
    clock.advance(hours=2)

    approved = lifecycle.approve(request.id, "u-admin", "Verified by phone")

    assert approved.status is RequestStatus.APPROVED
    assert approved.reviewed_by == "u-admin"
    assert approved.reviewed_at == clock()
    assert approved.admin_notes == "Verified by phone"

    user = store.get_user("u1")
    assert user.current_device_id == phone_fp.device_id
    assert not user.is_device_registered(old_device)
    assert len(user.registry) == 1
    record = user.registry.current_record
    assert record.registered_at == clock()
    assert record.attributes == phone_fp.attributes


def test_approve_refused_for_deactivated_account(store, lifecycle, bound_user, phone_fp):
    request = lifecycle.create("u1", phone_fp)
    store.set_user_active("u1", False)

    with pytest.raises(PolicyViolation):
        lifecycle.approve(request.id, "u-admin")

    assert lifecycle.get(request.id).is_pending()
    user = store.get_user("u1")
    assert user.current_device_id == bound_user.current_device_id
    assert not user.is_device_registered(phone_fp.device_id)

    rejected = lifecycle.reject(request.id, "u-admin", "Account closed")
    assert rejected.status is RequestStatus.REJECTED


def test_reject_leaves_registry_untouched(store, lifecycle, bound_user, phone_fp):
    request = lifecycle.create("u1", phone_fp)

    rejected = lifecycle.reject(request.id, "u-admin", "Unknown device", reason="Suspicious")

    assert rejected.status is RequestStatus.REJECTED
    assert rejected.reason == "Suspicious"
    user = store.get_user("u1")
    assert user.current_device_id == bound_user.current_device_id
    assert not user.is_device_registered(phone_fp.device_id)


def test_reject_keeps_reason_when_not_given(lifecycle, bound_user, phone_fp):
    request = lifecycle.create("u1", phone_fp, "Travelling")
    assert lifecycle.reject(request.id, "u-admin").reason == "Travelling"


@pytest.mark.parametrize("first, second", [
    ("approve", "approve"),
    ("approve", "reject"),
    ("reject", "approve"),
    ("reject", "reject"),
])
def test_terminal_requests_are_final(store, lifecycle, bound_user, phone_fp, first, second):
    request = lifecycle.create("u1", phone_fp)
    getattr(lifecycle, first)(request.id, "u-admin")
    registry_after_first = [r.device_id for r in store.get_user("u1").registry]

    with pytest.raises(ConflictError):
        getattr(lifecycle, second)(request.id, "u-admin")

    assert lifecycle.get(request.id).status.value == ("approved" if first == "approve" else "rejected")
    assert [r.device_id for r in store.get_user("u1").registry] == registry_after_first


def test_new_request_allowed_after_resolution(lifecycle, bound_user, phone_fp):
    first = lifecycle.create("u1", phone_fp)
    lifecycle.reject(first.id, "u-admin")

    second = lifecycle.create("u1", phone_fp)
    assert second.id != first.id
    assert [r.id for r in lifecycle.list().items] == [second.id]


def test_unknown_request(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.approve("missing", "u-admin")
    with pytest.raises(NotFoundError):
        lifecycle.get("missing")


def test_admin_notes_too_long(lifecycle, bound_user, phone_fp):
    request = lifecycle.create("u1", phone_fp)
    with pytest.raises(ValidationError):
        lifecycle.approve(request.id, "u-admin", "n" * 1001)
    assert lifecycle.get(request.id).is_pending()


def test_list_pagination_and_filters(store, lifecycle, extractor, signals, clock):
    store.add_user("u1", "alice")
    ids = []
    for i in range(3):
        clock.advance(minutes=1)
        fp = extractor.extract("u1", signals(screen_resolution=f"{1000 + i}x700"))
        ids.append(lifecycle.create("u1", fp).id)
    lifecycle.approve(ids[0], "u-admin")

    pending = lifecycle.list()
    assert pending.total == 2
    assert [r.id for r in pending.items] == [ids[2], ids[1]]

    page = lifecycle.list(status="all", page=2, limit=2)
    assert page.total == 3
    assert page.pages == 2
    assert [r.id for r in page.items] == [ids[0]]
    assert page.to_dict()["pagination"] == {"current": 2, "pages": 2, "total": 3}

    assert [r.id for r in lifecycle.for_user("u1")] == list(reversed(ids))
    assert lifecycle.stats() == {"pending": 2, "approved": 1, "rejected": 0}


def test_list_rejects_unknown_status(lifecycle):
    with pytest.raises(ValidationError):
        lifecycle.list(status="lost")


def test_to_dict_audit_shape(lifecycle, bound_user, phone_fp):
    data = lifecycle.create("u1", phone_fp).to_dict()
    assert list(data) == [
        "id", "user", "username", "email", "currentDeviceId", "newDeviceId",
        "newDeviceInfo", "currentDeviceInfo", "status", "requestedAt",
        "reviewedAt", "reviewedBy", "reason", "adminNotes",
    ]
    assert data["user"] == "u1"
    assert data["email"] == "alice@example.com"
    assert data["status"] == "pending"
    assert data["reviewedAt"] is None
