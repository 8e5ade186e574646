"""Tests for IMAP folder → label mapping."""

from __future__ import annotations

from mailmirror.imap.types import ImapFolder
from mailmirror.models.types import LabelType, SpecialUse, SystemLabelId
from mailmirror.storage.state_db import StateDb
from mailmirror.sync.folders import (
    get_labels_for_message,
    get_syncable_folders,
    map_folder_to_label,
    sync_folders_to_labels,
)


def _folder(path: str, *, special_use: str | None = None, attributes: tuple[str, ...] = ()) -> ImapFolder:
    return ImapFolder(
        path=path,
        raw_path=path,
        name=path.rsplit("/", 1)[-1],
        special_use=special_use,
        attributes=attributes,
    )


def test_inbox_maps_by_name() -> None:
    """INBOX without a special-use tag is still the system INBOX label."""
    mapping = map_folder_to_label(_folder("INBOX"))
    assert mapping.label_id == "INBOX"
    assert mapping.type == LabelType.system


def test_user_folder_maps_to_prefixed_path() -> None:
    """Unknown folders become user labels keyed by their full path."""
    mapping = map_folder_to_label(_folder("Projects/Alpha"))
    assert mapping.label_id == "folder-Projects/Alpha"
    assert mapping.label_name == "Alpha"
    assert mapping.type == LabelType.user


def test_special_use_wins_over_name() -> None:
    """A special-use tag overrides whatever the folder is called."""
    mapping = map_folder_to_label(_folder("Papierkorb-alt", special_use=SpecialUse.trash))
    assert mapping.label_id == SystemLabelId.trash.value


def test_localized_and_gmail_names() -> None:
    """Well-known names in other languages and Gmail paths are recognised."""
    assert map_folder_to_label(_folder("Gesendet")).label_id == "SENT"
    assert map_folder_to_label(_folder("Sent Messages")).label_id == "SENT"
    assert map_folder_to_label(_folder("[Gmail]/All Mail")).label_id == "all-mail"
    assert map_folder_to_label(_folder("Junk E-mail")).label_id == "SPAM"
    assert map_folder_to_label(_folder("Archive/2020")).type == LabelType.user


def test_mapping_is_deterministic() -> None:
    """Mapping the same folder twice gives identical results."""
    folder = _folder("Clients/ACME", attributes=("\\HasNoChildren",))
    assert map_folder_to_label(folder) == map_folder_to_label(folder)


def test_labels_for_message_flags() -> None:
    """Flags add UNREAD/STARRED/DRAFT without duplicating the folder label."""
    assert get_labels_for_message("INBOX", is_read=True, is_starred=False, is_draft=False) == ["INBOX"]
    assert get_labels_for_message("INBOX", is_read=False, is_starred=True, is_draft=False) == [
        "INBOX",
        "UNREAD",
        "STARRED",
    ]
    assert get_labels_for_message("DRAFT", is_read=True, is_starred=False, is_draft=True) == ["DRAFT"]


def test_syncable_folders_drop_containers() -> None:
    """Provider containers, virtual namespaces and \\Noselect folders are skipped."""
    folders = [
        _folder("INBOX"),
        _folder("[Gmail]"),
        _folder("[Nostromo]/Contacts"),
        _folder("Parent", attributes=("\\Noselect", "\\HasChildren")),
        _folder("Parent/Child"),
    ]
    assert [f.path for f in get_syncable_folders(folders)] == ["INBOX", "Parent/Child"]


def test_sync_folders_to_labels(db: StateDb) -> None:
    """Every folder gets a label, plus the UNREAD pseudo-label."""
    sync_folders_to_labels(
        db,
        account_id="acc1",
        folders=[_folder("INBOX"), _folder("Trash", special_use="\\Trash"), _folder("Work")],
    )
    labels = {label.id: label for label in db.get_labels("acc1")}

    assert set(labels) == {"INBOX", "TRASH", "folder-Work", "UNREAD"}
    assert labels["TRASH"].imap_special_use == "\\Trash"
    assert labels["folder-Work"].type == LabelType.user
    assert labels["UNREAD"].imap_folder_path is None

    # Re-running is an upsert.
    sync_folders_to_labels(db, account_id="acc1", folders=[_folder("INBOX")])
    assert len(db.get_labels("acc1")) == 4
