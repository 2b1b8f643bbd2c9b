"""Source instrumentation tests."""

from log3.console import CONSOLE_IMPORT_PATH, CONSOLE_LIBRARY_SOURCE, CONSOLE_MARKER
from log3.models import ContractMetadata, SourceCodeMetadata
from log3.patcher import (
    CONSOLE_IMPORT_LINE,
    patch_metadata_source,
    patch_source_unit,
)

from conftest import COUNTER_SOURCE


def test_commented_console_calls_are_enabled_with_indentation_kept():
    source = "function f() public {\n    // console.log(\"x\", x);\n\t//console.log(1);\n}\n"

    patched = patch_source_unit(source)

    assert "    console.log(\"x\", x);" in patched
    assert "\tconsole.log(1);" in patched
    assert "//" not in patched


def test_other_comments_and_trailing_comments_are_untouched():
    source = "// SPDX-License-Identifier: MIT\nuint x; // console.log(x);\n// see console.log docs\n"

    patched = patch_source_unit(source)

    assert patched.startswith("// SPDX-License-Identifier: MIT")
    assert "uint x; // console.log(x);" in patched
    assert "// see console.log docs" in patched
    assert patched.count("//") == 3


def test_custom_pattern_enables_other_diagnostic_conventions():
    source = "    // emit Debug(x);\n    // console.log(x);\n"

    patched = patch_source_unit(source, r"^([ \t]*)//([ \t]*emit Debug)")

    assert "    emit Debug(x);" in patched
    assert "    // console.log(x);" in patched


def test_flat_source_gets_library_prepended():
    metadata = ContractMetadata(source_code=COUNTER_SOURCE, contract_name="Counter")

    patched = patch_metadata_source(metadata)

    assert isinstance(patched.source_code, str)
    assert patched.source_code.startswith(CONSOLE_LIBRARY_SOURCE)
    assert 'console.log("count is %d", count);' in patched.source_code
    assert "// console.log" not in patched.source_code
    # Input record is not modified
    assert metadata.source_code == COUNTER_SOURCE


def test_multi_unit_source_gets_console_unit_and_imports():
    source = SourceCodeMetadata(
        language="Solidity",
        sources={
            "contracts/Counter.sol": COUNTER_SOURCE,
            "contracts/Lib.sol": "library Lib {}\n",
        },
        settings={"optimizer": {"enabled": True, "runs": 200}},
    )
    metadata = ContractMetadata(source_code=source, contract_name="Counter")

    patched = patch_metadata_source(metadata).source_code

    assert isinstance(patched, SourceCodeMetadata)
    assert patched.settings == source.settings
    assert patched.sources[CONSOLE_IMPORT_PATH] == CONSOLE_LIBRARY_SOURCE
    for path in ("contracts/Counter.sol", "contracts/Lib.sol"):
        assert patched.sources[path].startswith(CONSOLE_IMPORT_LINE)
    assert "    console.log" in patched.sources["contracts/Counter.sol"]


def test_patching_twice_is_idempotent():
    flat = ContractMetadata(source_code=COUNTER_SOURCE, contract_name="Counter")
    multi = ContractMetadata(
        source_code=SourceCodeMetadata("Solidity", {"Counter.sol": COUNTER_SOURCE}),
        contract_name="Counter",
    )

    for metadata in (flat, multi):
        once = patch_metadata_source(metadata)
        twice = patch_metadata_source(once)
        assert twice == once

    assert patch_metadata_source(flat).source_code.count(CONSOLE_MARKER) == 1


def test_flattened_hardhat_console_is_not_added_again():
    hardhat_console = (
        "library console {\n"
        "    address constant CONSOLE_ADDRESS = 0x000000000000000000636F6e736F6c652e6c6f67;\n"
        "}\n"
    )
    flat = ContractMetadata(source_code=hardhat_console + COUNTER_SOURCE, contract_name="Counter")

    patched = patch_metadata_source(flat).source_code

    assert patched.count("library console") == 1
    assert "    console.log(\"count is %d\", count);" in patched


def test_unknown_source_shape_passes_through():
    metadata = ContractMetadata(source_code=None, contract_name="Counter")

    assert patch_metadata_source(metadata) is metadata
