from typing import Dict, Iterable, List, Optional

from errors import UnknownAssociation
from models import Association, AssociationKind, HandlerInfo, Mapping, empty_mapping
from registry import HandlerRegistry
from utils import normalize_identifier, unique_casefold


# Identifiers tracked out of the box; callers may add their own.
EXTENSION_CATEGORIES: Dict[str, List[str]] = {
    "Documents": [
        "txt", "rtf", "rtfd", "pdf", "doc", "docx", "odt", "xls", "xlsx", "ods", "csv",
        "ppt", "pptx", "odp", "pages", "numbers", "key",
    ],
    "Code & Text": [
        "json", "xml", "yaml", "yml", "toml", "md", "markdown", "rst", "py", "pyw", "pyi",
        "js", "mjs", "cjs", "jsx", "ts", "tsx", "mts", "cts", "html", "htm", "xhtml",
        "css", "scss", "sass", "less", "swift", "m", "mm", "h", "kt", "kts", "java", "jar",
        "class", "go", "mod", "rs", "c", "cpp", "cc", "cxx", "hpp", "cs", "rb", "erb", "php",
        "sh", "bash", "zsh", "fish", "sql", "r", "lua", "pl", "pm", "ex", "exs", "clj",
        "cljs", "scala", "sc", "hs", "lhs", "elm", "vue", "svelte", "astro", "prisma",
        "graphql", "gql", "proto", "dockerfile", "makefile", "cmake", "gradle", "tf", "tfvars",
    ],
    "Images": [
        "png", "jpg", "jpeg", "gif", "webp", "svg", "ico", "icns", "bmp", "tiff", "tif",
        "heic", "heif", "raw", "cr2", "nef", "arw", "psd", "ai", "eps", "sketch", "fig",
    ],
    "Video": ["mp4", "m4v", "mov", "avi", "mkv", "webm", "flv", "wmv", "mpg", "mpeg", "3gp", "ogv"],
    "Audio": ["mp3", "m4a", "aac", "wav", "flac", "ogg", "wma", "aiff", "aif", "opus"],
    "Archives": ["zip", "tar", "gz", "tgz", "bz2", "xz", "7z", "rar", "dmg", "iso"],
}

SCHEME_DESCRIPTIONS: Dict[str, str] = {
    "http": "Web Browser",
    "https": "Web Browser",
    "file": "File Browser",
    "ftp": "FTP Client",
    "mailto": "Email Client",
    "tel": "Phone Calls",
    "sms": "Text Messages",
    "facetime": "FaceTime",
    "facetime-audio": "FaceTime",
    "ssh": "SSH Client",
    "git": "Git Client",
    "vscode": "VS Code",
    "vscode-insiders": "VS Code",
    "cursor": "Cursor",
    "zed": "Zed",
    "slack": "Slack",
    "discord": "Discord",
    "zoom": "Zoom",
    "zoommtg": "Zoom",
    "msteams": "Microsoft Teams",
}

COMMON_EXTENSIONS: List[str] = [ext for exts in EXTENSION_CATEGORIES.values() for ext in exts]
COMMON_SCHEMES: List[str] = list(SCHEME_DESCRIPTIONS)


def category_for(extension: str) -> str:
    ext = normalize_identifier(AssociationKind.FILE_TYPE, extension)
    for category, exts in EXTENSION_CATEGORIES.items():
        if ext in exts:
            return category
    return "Other"


class AssociationCatalog:
    """Working set of associations and their current handlers.

    ``fetch`` only reads from the registry and may run on a worker thread;
    ``apply`` and the other mutators must run on the owning thread.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        extensions: Optional[Iterable[str]] = None,
        schemes: Optional[Iterable[str]] = None,
    ) -> None:
        self.registry = registry
        self.tracked: Dict[AssociationKind, List[str]] = {
            AssociationKind.FILE_TYPE: self._normalized(
                AssociationKind.FILE_TYPE, COMMON_EXTENSIONS if extensions is None else extensions
            ),
            AssociationKind.URL_SCHEME: self._normalized(
                AssociationKind.URL_SCHEME, COMMON_SCHEMES if schemes is None else schemes
            ),
        }
        self._associations: Dict[AssociationKind, Dict[str, Association]] = {kind: {} for kind in AssociationKind}
        self._loaded: Dict[AssociationKind, bool] = {kind: False for kind in AssociationKind}
        self._info_cache: Dict[str, Optional[HandlerInfo]] = {}

    @staticmethod
    def _normalized(kind: AssociationKind, identifiers: Iterable[str]) -> List[str]:
        return unique_casefold(normalize_identifier(kind, value) for value in identifiers)

    def track(self, kind: AssociationKind, identifier: str) -> str:
        identifier = normalize_identifier(kind, identifier)
        if identifier and identifier not in self.tracked[kind]:
            self.tracked[kind].append(identifier)
        return identifier

    def is_loaded(self, kind: AssociationKind) -> bool:
        return self._loaded[kind]

    def fetch(self, kind: AssociationKind) -> List[Association]:
        results = []
        for identifier in list(self.tracked[kind]):
            results.append(self.fetch_one(kind, identifier))
        return sorted(results, key=lambda assoc: assoc.identifier)

    def fetch_one(self, kind: AssociationKind, identifier: str) -> Association:
        current = self.registry.get_handler(kind, identifier)
        available = self.registry.get_all_handlers(kind, identifier)
        description = SCHEME_DESCRIPTIONS.get(identifier, "") if kind is AssociationKind.URL_SCHEME else category_for(identifier)
        return Association(
            kind=kind,
            identifier=identifier,
            current_handler=current,
            current_name=self._lookup_name(current),
            available_handlers=list(available),
            description=description,
        )

    def apply(self, kind: AssociationKind, associations: List[Association]) -> None:
        self._associations[kind] = {assoc.identifier: assoc for assoc in associations}
        self._loaded[kind] = True

    def load(self, kind: AssociationKind) -> List[Association]:
        self.apply(kind, self.fetch(kind))
        return self.associations(kind)

    def refresh_one(self, kind: AssociationKind, identifier: str) -> Association:
        assoc = self.fetch_one(kind, identifier)
        self._associations[kind][identifier] = assoc
        return assoc

    def associations(self, kind: AssociationKind) -> List[Association]:
        return [self._associations[kind][key] for key in sorted(self._associations[kind])]

    def get(self, kind: AssociationKind, identifier: str) -> Optional[Association]:
        return self._associations[kind].get(identifier)

    def require(self, kind: AssociationKind, identifier: str) -> Association:
        assoc = self.get(kind, identifier)
        if assoc is None:
            raise UnknownAssociation(kind, identifier)
        return assoc

    def current_handler(self, kind: AssociationKind, identifier: str) -> Optional[str]:
        assoc = self.get(kind, identifier)
        return assoc.current_handler if assoc else None

    def current_mapping(self) -> Mapping:
        mapping = empty_mapping()
        for kind, items in self._associations.items():
            for identifier, assoc in items.items():
                if assoc.current_handler:
                    mapping[kind][identifier] = assoc.current_handler
        return mapping

    def _lookup_name(self, handler_id: Optional[str]) -> str:
        # Worker-thread safe: never touches the name cache.
        if not handler_id:
            return ""
        info = self.registry.resolve_handler_info(handler_id)
        return info.name if info else handler_id

    def handler_info(self, handler_id: str) -> Optional[HandlerInfo]:
        if handler_id not in self._info_cache:
            self._info_cache[handler_id] = self.registry.resolve_handler_info(handler_id)
        return self._info_cache[handler_id]

    def handler_name(self, handler_id: Optional[str]) -> str:
        if not handler_id:
            return ""
        info = self.handler_info(handler_id)
        return info.name if info else handler_id

    def is_available(self, handler_id: str) -> bool:
        # Installed apps can disappear between refreshes, so ask the registry.
        return self.registry.resolve_handler_info(handler_id) is not None

    def forget_handler_info(self) -> None:
        self._info_cache.clear()
