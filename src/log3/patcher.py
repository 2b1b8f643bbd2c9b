"""
Source instrumentation.

Uncomments ``// console.log(...)`` lines in verified contract sources and
makes the diagnostics library available to the compiler.
"""

import re
from dataclasses import replace
from typing import Dict, Pattern, Union

from .console import CONSOLE_IMPORT_PATH, CONSOLE_LIBRARY_SOURCE, CONSOLE_MARKER
from .models import ContractMetadata, SourceCodeMetadata

# Group 1: indentation, group 2: the call after the comment marker
DEFAULT_DIAGNOSTIC_PATTERN = r"^([ \t]*)//([ \t]*console\.log)"

CONSOLE_IMPORT_LINE = f'import "{CONSOLE_IMPORT_PATH}";'


def compile_pattern(pattern: Union[str, Pattern, None] = None) -> Pattern:
    if pattern is None:
        pattern = DEFAULT_DIAGNOSTIC_PATTERN
    if isinstance(pattern, str):
        return re.compile(pattern, re.MULTILINE)
    return pattern


def patch_source_unit(source_unit: str, pattern: Union[str, Pattern, None] = None) -> str:
    """Remove the ``//`` in front of diagnostic calls, keeping indentation."""
    return compile_pattern(pattern).sub(r"\1\2", source_unit)


def add_console_to_source(source_code: str) -> str:
    """Prepend the diagnostics library to a flat source unit."""
    if CONSOLE_MARKER in source_code:
        return source_code
    return CONSOLE_LIBRARY_SOURCE + "\n" + source_code


def add_console_import(content: str) -> str:
    if content.startswith(CONSOLE_IMPORT_LINE):
        return content
    return f"{CONSOLE_IMPORT_LINE}\n\n{content}"


def add_console_to_sources(sources: Dict[str, str]) -> Dict[str, str]:
    patched = dict(sources)
    patched[CONSOLE_IMPORT_PATH] = CONSOLE_LIBRARY_SOURCE
    return patched


def patch_metadata_source(metadata: ContractMetadata,
                          pattern: Union[str, Pattern, None] = None) -> ContractMetadata:
    """
    Return a copy of ``metadata`` with diagnostic calls uncommented and the
    console library injected.

    Flat sources get the library prepended. Multi-unit sources get a
    ``hardhat/console.sol`` unit and an import of it at the top of every
    other unit. Any other source representation is returned untouched.
    """
    regex = compile_pattern(pattern)
    source = metadata.source_code

    if isinstance(source, str):
        patched_source = add_console_to_source(patch_source_unit(source, regex))
    elif isinstance(source, SourceCodeMetadata):
        units = {}
        for path, content in source.sources.items():
            if path == CONSOLE_IMPORT_PATH:
                continue
            units[path] = add_console_import(patch_source_unit(content, regex))
        patched_source = replace(source, sources=add_console_to_sources(units))
    else:
        return metadata

    return replace(metadata, source_code=patched_source)
