"""
Prompt rendering for selected context entries.

Every renderer is a pure function of the entries and options passed in.
"""

import json

from ..constants import MAX_RENDERED_DIAGNOSTICS
from ..errors import ValidationError
from .models import (
    BuildPromptOptions,
    ContextEntry,
    ContextType,
    DiagnosticsContent,
    FileContent,
    FileStructureContent,
    FolderContent,
    ProjectMetaContent,
    PromptFormat,
    SymbolContent,
)

_SEVERITY_ICONS = {"error": "❌", "warning": "⚠️"}


def format_prompt(entries: list[ContextEntry], options: BuildPromptOptions) -> str:
    fmt = PromptFormat(options.format)
    if fmt == PromptFormat.JSON:
        return json.dumps(
            [e.to_dict() for e in entries], indent=2, ensure_ascii=False, default=str
        )
    if fmt == PromptFormat.CONCISE:
        return "\n".join(_format_concise(e) for e in entries)
    return format_markdown(entries, options)


def _format_concise(entry: ContextEntry) -> str:
    content = entry.content
    if isinstance(content, FileContent):
        return f"File: {content.path} ({entry.estimated_tokens} tokens)"
    if isinstance(content, SymbolContent):
        return f"Symbol: {content.name} in {entry.path}"
    return f"{entry.type.value}: {entry.id}"


def format_markdown(entries: list[ContextEntry], options: BuildPromptOptions) -> str:
    sections: list[str] = []

    project = next((e for e in entries if e.type == ContextType.PROJECT_META), None)
    if project and options.include_structure:
        sections.append(_format_project_meta(project.content))

    files = [
        e for e in entries if e.type in (ContextType.FILE, ContextType.FILE_STRUCTURE)
    ]
    if files:
        sections.append("## Related Files\n")
        sections.append("\n\n".join(_format_file(e.content) for e in files))

    folders = [e for e in entries if e.type == ContextType.FOLDER]
    if folders:
        sections.append("\n## Related Folders\n")
        sections.append("\n".join(_format_folder(e.content) for e in folders))

    symbols = [e for e in entries if e.type == ContextType.SYMBOL]
    if symbols and options.include_structure:
        sections.append("\n## Related Symbols\n")
        sections.append("\n".join(_format_symbol(e.content) for e in symbols))

    diagnostics = [e for e in entries if e.type == ContextType.DIAGNOSTICS]
    if diagnostics and options.include_diagnostics:
        sections.append("\n## Diagnostics\n")
        sections.append("\n\n".join(_format_diagnostics(e.content) for e in diagnostics))

    return "".join(sections)


def _format_project_meta(meta: ProjectMetaContent) -> str:
    return (
        "## Project\n"
        f"- **Name**: {meta.name}\n"
        f"- **Type**: {meta.project_type}\n"
        f"- **Languages**: {', '.join(meta.languages)}\n"
        f"- **Frameworks**: {', '.join(meta.frameworks) or 'none'}\n"
        f"- **Entry files**: {', '.join(meta.entry_files) or 'none'}\n"
    )


def _format_file(content) -> str:
    if isinstance(content, FileStructureContent):
        header = f"### `{content.path}` (structure)\n\n"
        if not content.symbols:
            return header + "(no symbols)"
        return header + "\n".join(f"- **{s.kind}**: `{s.name}`" for s in content.symbols)
    if isinstance(content, FileContent):
        return f"### `{content.path}`\n\n```{content.language}\n{content.content}\n```"
    raise ValidationError(f"cannot render {type(content).__name__} as a file")


def _format_folder(content: FolderContent) -> str:
    line = f"- 📁 `{content.path}`"
    parts = []
    if content.file_count is not None:
        parts.append(f"{content.file_count} files")
    if content.dir_count is not None:
        parts.append(f"{content.dir_count} subfolders")
    if parts:
        line += f" ({', '.join(parts)})"
    return line


def _format_symbol(content: SymbolContent) -> str:
    location = "unknown"
    if content.definition:
        location = f"{content.definition.path}:{content.definition.line_start}"
    return f"- **{content.kind}**: `{content.name}` ({location})"


def _format_diagnostics(content: DiagnosticsContent) -> str:
    output = ""
    if content.summary:
        output += f"Errors: {content.summary.errors}, Warnings: {content.summary.warnings}"
    if content.items:
        lines = []
        for d in content.items[:MAX_RENDERED_DIAGNOSTICS]:
            icon = _SEVERITY_ICONS.get(d.severity, "ℹ️")
            lines.append(f"{icon} **{d.path}:{d.line}**: {d.message}")
        output += "\n\n" + "\n".join(lines)
    return output
