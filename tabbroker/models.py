from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

CommandKind = Literal[
    "open-tab",
    "close-tabs",
    "get-tab-list",
    "get-browser-recent-history",
    "get-tab-content",
    "reorder-tabs",
    "find-highlight",
    "group-tabs",
    "click-element",
    "fill-form-field",
    "execute-javascript",
    "monitor-page-changes",
    "screenshot-website",
    "search-bookmarks",
    "open-bookmark",
]
ResourceKind = Literal[
    "opened-tab-id",
    "tabs-closed",
    "tabs",
    "history",
    "tab-content",
    "tabs-reordered",
    "find-highlight-result",
    "new-tab-group",
    "element-clicked",
    "form-field-filled",
    "javascript-executed",
    "page-changes-detected",
    "screenshot-saved",
    "bookmarks-found",
    "bookmark-opened",
]
# "int", "num", "str", "bool", "any", "obj", or a list form "int[]" / "obj[]".
FieldKind = str


@dataclass(frozen=True, slots=True)
class FieldSpec:
    kind: FieldKind
    required: bool = True


def _req(kind: FieldKind) -> FieldSpec:
    return FieldSpec(kind, True)


def _opt(kind: FieldKind) -> FieldSpec:
    return FieldSpec(kind, False)


@dataclass(frozen=True, slots=True)
class CommandSpec:
    command: CommandKind
    resource: ResourceKind
    tool_id: str
    fields: dict[str, FieldSpec]
    resource_fields: dict[str, FieldSpec]

    @property
    def targets_url(self) -> bool:
        return "url" in self.fields

    @property
    def targets_tab(self) -> bool:
        return self.command in TAB_SCOPED_COMMANDS


_SPECS: tuple[CommandSpec, ...] = (
    CommandSpec(
        "open-tab", "opened-tab-id", "open-browser-tab",
        {"url": _req("str")},
        {"tabId": _opt("int")},
    ),
    CommandSpec(
        "close-tabs", "tabs-closed", "close-browser-tabs",
        {"tabIds": _req("int[]")},
        {},
    ),
    CommandSpec(
        "get-tab-list", "tabs", "get-list-of-open-tabs",
        {},
        {"tabs": _req("obj[]")},
    ),
    CommandSpec(
        "get-browser-recent-history", "history", "get-recent-browser-history",
        {"searchQuery": _opt("str")},
        {"historyItems": _req("obj[]")},
    ),
    CommandSpec(
        "get-tab-content", "tab-content", "get-tab-web-content",
        {"tabId": _req("int"), "offset": _opt("int")},
        {
            "tabId": _req("int"),
            "fullText": _req("str"),
            "isTruncated": _req("bool"),
            "totalLength": _req("int"),
            "links": _req("obj[]"),
        },
    ),
    CommandSpec(
        "reorder-tabs", "tabs-reordered", "reorder-browser-tabs",
        {"tabOrder": _req("int[]")},
        {"tabOrder": _req("int[]")},
    ),
    CommandSpec(
        "find-highlight", "find-highlight-result", "find-highlight-in-browser-tab",
        {"tabId": _req("int"), "queryPhrase": _req("str")},
        {"noOfResults": _req("int")},
    ),
    CommandSpec(
        "group-tabs", "new-tab-group", "group-browser-tabs",
        {
            "tabIds": _req("int[]"),
            "isCollapsed": _req("bool"),
            "groupColor": _req("str"),
            "groupTitle": _req("str"),
        },
        {"groupId": _req("int")},
    ),
    CommandSpec(
        "click-element", "element-clicked", "click-element-in-browser",
        {
            "tabId": _req("int"),
            "selector": _opt("str"),
            "x": _opt("num"),
            "y": _opt("num"),
        },
        {"success": _req("bool"), "elementInfo": _opt("str")},
    ),
    CommandSpec(
        "fill-form-field", "form-field-filled", "fill-form-field-in-browser",
        {
            "tabId": _req("int"),
            "selector": _req("str"),
            "value": _req("str"),
            "submit": _opt("bool"),
        },
        {"success": _req("bool")},
    ),
    CommandSpec(
        "execute-javascript", "javascript-executed", "execute-javascript-in-browser",
        {"tabId": _req("int"), "code": _req("str")},
        {"result": _req("any"), "error": _opt("str")},
    ),
    CommandSpec(
        "monitor-page-changes", "page-changes-detected", "monitor-page-changes-in-browser",
        {"tabId": _req("int"), "selector": _opt("str"), "timeout": _opt("int")},
        {"changes": _req("str"), "timedOut": _req("bool")},
    ),
    CommandSpec(
        "screenshot-website", "screenshot-saved", "screenshot-website",
        {"tabId": _req("int"), "fullPage": _opt("bool")},
        {"dataUrl": _req("str")},
    ),
    CommandSpec(
        "search-bookmarks", "bookmarks-found", "search-bookmarks",
        {"query": _opt("str")},
        {"bookmarks": _req("obj[]")},
    ),
    CommandSpec(
        "open-bookmark", "bookmark-opened", "open-bookmark",
        {"bookmarkId": _req("str")},
        {"tabId": _opt("int"), "success": _req("bool")},
    ),
)

TAB_SCOPED_COMMANDS: frozenset[str] = frozenset(
    {
        "get-tab-content",
        "find-highlight",
        "click-element",
        "fill-form-field",
        "execute-javascript",
        "monitor-page-changes",
        "screenshot-website",
    }
)

COMMAND_SPECS: dict[str, CommandSpec] = {spec.command: spec for spec in _SPECS}
RESOURCE_SPECS: dict[str, CommandSpec] = {spec.resource: spec for spec in _SPECS}
COMMAND_TO_RESOURCE: dict[str, str] = {spec.command: spec.resource for spec in _SPECS}
COMMAND_TO_TOOL_ID: dict[str, str] = {spec.command: spec.tool_id for spec in _SPECS}
TOOL_ID_TO_COMMAND: dict[str, str] = {spec.tool_id: spec.command for spec in _SPECS}


@dataclass(slots=True)
class Request:
    command: CommandKind
    correlation_id: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def spec(self) -> CommandSpec:
        return COMMAND_SPECS[self.command]


@dataclass(slots=True)
class Response:
    resource: ResourceKind
    correlation_id: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ErrorEnvelope:
    correlation_id: str
    error_message: str


Message = Response | ErrorEnvelope
