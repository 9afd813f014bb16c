import pytest

from chatsync.domain.chat.attachments import make_attachment, multipart_files, normalize_attachments
from chatsync.domain.chat.errors import ValidationError
from chatsync.domain.chat.events import MessagePayload
from chatsync.domain.chat.models import DeliveryStatus
from chatsync.domain.chat.schemas import history_message


def test_mime_type_is_guessed_from_file_name():
    assert make_attachment("photo.png", b"x").mime_type == "image/png"
    assert make_attachment("report.pdf", b"x").mime_type == "application/pdf"


def test_normalize_accepts_allowed_files():
    files = [make_attachment("a.png", b"1"), make_attachment("b.txt", b"22", "TEXT/PLAIN")]

    checked = normalize_attachments(files, max_count=5, max_bytes=10)

    assert [item.mime_type for item in checked] == ["image/png", "text/plain"]
    assert normalize_attachments(None, max_count=5, max_bytes=10) == ()


@pytest.mark.parametrize(
    "files",
    [
        [make_attachment("big.png", b"x" * 11)],
        [make_attachment("empty.png", b"")],
        [make_attachment("run.exe", b"MZ", "application/x-msdownload")],
        [make_attachment("", b"x", "image/png")],
        [make_attachment(f"{index}.png", b"x") for index in range(6)],
    ],
)
def test_normalize_rejects_invalid_files(files):
    with pytest.raises(ValidationError):
        normalize_attachments(files, max_count=5, max_bytes=10)


def test_multipart_fields_repeat_the_attachments_name():
    files = multipart_files([make_attachment("a.png", b"1"), make_attachment("b.pdf", b"2")])

    assert files == [
        ("attachments", ("a.png", b"1", "image/png")),
        ("attachments", ("b.pdf", b"2", "application/pdf")),
    ]


def test_history_rows_map_to_final_statuses():
    own_read = MessagePayload.model_validate({"id": 1, "conversation_id": 7, "sender_id": 1, "is_read": 1})
    own_unread = MessagePayload.model_validate({"id": 2, "conversation_id": 7, "sender_id": 1, "is_read": 0})
    remote = MessagePayload.model_validate({"id": 3, "conversation_id": 7, "sender_id": 2})

    assert history_message(own_read, "1").delivery_status is DeliveryStatus.READ
    assert history_message(own_unread, "1").delivery_status is DeliveryStatus.SENT
    assert history_message(remote, "1").delivery_status is DeliveryStatus.DELIVERED
    assert not history_message(remote, "1").is_temporary
