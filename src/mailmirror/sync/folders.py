"""IMAP folder to label mapping."""

from __future__ import annotations

from dataclasses import dataclass

from mailmirror.imap.types import ImapFolder
from mailmirror.models.types import LabelType, SpecialUse, SystemLabelId
from mailmirror.storage.state_db import StateDb

USER_FOLDER_PREFIX = "folder-"


@dataclass(frozen=True)
class FolderLabelMapping:
    """Label identity derived from a folder."""

    label_id: str
    label_name: str
    type: LabelType


SPECIAL_USE_MAP: dict[str, FolderLabelMapping] = {
    SpecialUse.inbox: FolderLabelMapping(SystemLabelId.inbox.value, "Inbox", LabelType.system),
    SpecialUse.sent: FolderLabelMapping(SystemLabelId.sent.value, "Sent", LabelType.system),
    SpecialUse.drafts: FolderLabelMapping(SystemLabelId.draft.value, "Drafts", LabelType.system),
    SpecialUse.trash: FolderLabelMapping(SystemLabelId.trash.value, "Trash", LabelType.system),
    SpecialUse.junk: FolderLabelMapping(SystemLabelId.spam.value, "Spam", LabelType.system),
    SpecialUse.archive: FolderLabelMapping(SystemLabelId.archive.value, "Archive", LabelType.system),
    SpecialUse.flagged: FolderLabelMapping(SystemLabelId.starred.value, "Starred", LabelType.system),
    SpecialUse.all: FolderLabelMapping(SystemLabelId.all_mail.value, "All Mail", LabelType.system),
    SpecialUse.important: FolderLabelMapping(
        SystemLabelId.important.value,
        "Important",
        LabelType.system,
    ),
}

# Lowercased folder path/name -> implied special-use, for servers without RFC 6154.
FOLDER_NAME_MAP: dict[str, SpecialUse] = {
    "inbox": SpecialUse.inbox,
    "sent": SpecialUse.sent,
    "sent items": SpecialUse.sent,
    "sent mail": SpecialUse.sent,
    "sent messages": SpecialUse.sent,
    "envoyés": SpecialUse.sent,
    "enviados": SpecialUse.sent,
    "gesendet": SpecialUse.sent,
    "drafts": SpecialUse.drafts,
    "draft": SpecialUse.drafts,
    "draftbox": SpecialUse.drafts,
    "brouillons": SpecialUse.drafts,
    "borradores": SpecialUse.drafts,
    "entwürfe": SpecialUse.drafts,
    "trash": SpecialUse.trash,
    "deleted": SpecialUse.trash,
    "deleted items": SpecialUse.trash,
    "deleted messages": SpecialUse.trash,
    "bin": SpecialUse.trash,
    "corbeille": SpecialUse.trash,
    "papelera": SpecialUse.trash,
    "papierkorb": SpecialUse.trash,
    "unsolbox": SpecialUse.trash,
    "junk": SpecialUse.junk,
    "junk e-mail": SpecialUse.junk,
    "junk email": SpecialUse.junk,
    "spam": SpecialUse.junk,
    "archive": SpecialUse.archive,
    "archives": SpecialUse.archive,
    "flagged": SpecialUse.flagged,
    "starred": SpecialUse.flagged,
    "all mail": SpecialUse.all,
    "[gmail]/all mail": SpecialUse.all,
    "[gmail]/sent mail": SpecialUse.sent,
    "[gmail]/drafts": SpecialUse.drafts,
    "[gmail]/spam": SpecialUse.junk,
    "[gmail]/trash": SpecialUse.trash,
    "[gmail]/bin": SpecialUse.trash,
    "[gmail]/starred": SpecialUse.flagged,
    "[gmail]/important": SpecialUse.important,
    "[google mail]/all mail": SpecialUse.all,
    "[google mail]/sent mail": SpecialUse.sent,
    "[google mail]/drafts": SpecialUse.drafts,
    "[google mail]/spam": SpecialUse.junk,
    "[google mail]/trash": SpecialUse.trash,
    "[google mail]/bin": SpecialUse.trash,
    "[google mail]/starred": SpecialUse.flagged,
    "[google mail]/important": SpecialUse.important,
}

_CONTAINER_FOLDERS = frozenset({"[gmail]", "[google mail]"})
_VIRTUAL_FOLDER_PREFIXES = ("[nostromo]",)
_UNSELECTABLE_ATTRIBUTES = frozenset({"\\noselect", "\\nonexistent"})


def map_folder_to_label(folder: ImapFolder) -> FolderLabelMapping:
    """Map an IMAP folder to a label.

    Special-use attributes win, then well-known folder names (path first,
    then display name), and anything else becomes a user label keyed by the
    raw server path.

    Args:
        folder: Folder snapshot from LIST.

    Returns:
        Label id, name and type for the folder.
    """
    if folder.special_use:
        mapping = SPECIAL_USE_MAP.get(folder.special_use)
        if mapping is not None:
            return mapping

    implied = FOLDER_NAME_MAP.get(folder.path.lower()) or FOLDER_NAME_MAP.get(folder.name.lower())
    if implied is not None:
        return SPECIAL_USE_MAP[implied]

    return FolderLabelMapping(
        label_id=f"{USER_FOLDER_PREFIX}{folder.raw_path}",
        label_name=folder.name,
        type=LabelType.user,
    )


def get_labels_for_message(
    folder_label_id: str,
    *,
    is_read: bool,
    is_starred: bool,
    is_draft: bool,
) -> list[str]:
    """Return the label ids a message should carry.

    Args:
        folder_label_id: Label id of the folder the message lives in.
        is_read: Whether the message has ``\\Seen``.
        is_starred: Whether the message has ``\\Flagged``.
        is_draft: Whether the message has ``\\Draft``.

    Returns:
        Label ids, folder label first, without duplicates.
    """
    labels = [folder_label_id]
    if not is_read:
        labels.append(SystemLabelId.unread.value)
    if is_starred:
        labels.append(SystemLabelId.starred.value)
    if is_draft:
        labels.append(SystemLabelId.draft.value)
    return list(dict.fromkeys(labels))


def get_syncable_folders(folders: list[ImapFolder]) -> list[ImapFolder]:
    """Drop provider container folders, virtual namespaces and unselectable folders."""
    out: list[ImapFolder] = []
    for folder in folders:
        lower_path = folder.path.lower()
        if lower_path in _CONTAINER_FOLDERS:
            continue
        if lower_path.startswith(_VIRTUAL_FOLDER_PREFIXES):
            continue
        if {a.lower() for a in folder.attributes} & _UNSELECTABLE_ATTRIBUTES:
            continue
        out.append(folder)
    return out


def sync_folders_to_labels(db: StateDb, *, account_id: str, folders: list[ImapFolder]) -> None:
    """Upsert one label per folder plus the UNREAD pseudo-label.

    Args:
        db: State database.
        account_id: Account the folders belong to.
        folders: Syncable folders.
    """
    with db.transaction():
        for folder in folders:
            mapping = map_folder_to_label(folder)
            db.upsert_label(
                label_id=mapping.label_id,
                account_id=account_id,
                name=mapping.label_name,
                label_type=mapping.type,
                imap_folder_path=folder.raw_path,
                imap_special_use=folder.special_use,
            )

        db.upsert_label(
            label_id=SystemLabelId.unread.value,
            account_id=account_id,
            name="Unread",
            label_type=LabelType.system,
        )
