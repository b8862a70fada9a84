"""Built-in validator tests."""

from __future__ import annotations

from pipeline_forge.validators import compile_python_files, validate_json, validate_python


def test_validate_json_accepts_valid_json() -> None:
    result = validate_json('{"a": 1}')

    assert result.ok is True
    assert result.diagnostics == ()


def test_validate_json_rejects_invalid_json_with_useful_message() -> None:
    result = validate_json("{a:1}")

    assert result.kind == "failure"
    assert "Invalid JSON:" in result.diagnostics[0].message
    assert "line" in result.diagnostics[0].message


def test_validate_python_accepts_valid_syntax() -> None:
    assert validate_python("x=1\nprint(x)").ok is True


def test_validate_python_rejects_invalid_syntax_with_useful_message() -> None:
    result = validate_python("x=\n", path="main.py")

    assert result.kind == "failure"
    diagnostic = result.diagnostics[0]
    assert "Invalid Python:" in diagnostic.message
    assert diagnostic.unit == "main.py"
    assert diagnostic.location.startswith("main.py:1:")


def test_compile_python_files_attributes_errors_to_each_file() -> None:
    result = compile_python_files(
        {
            "ok.py": "def f():\n    return 1\n",
            "broken_a.py": "def f(:\n",
            "broken_b.py": "if True\n    pass\n",
        }
    )

    assert result.kind == "failure"
    assert [item.unit for item in result.diagnostics] == ["broken_a.py", "broken_b.py"]


def test_compile_python_files_success_for_clean_sources() -> None:
    assert compile_python_files({"a.py": "x = 1\n", "b.py": "import os\n"}).ok is True


def test_compile_python_files_reports_unprocessable_input_as_exception() -> None:
    result = compile_python_files({"a.py": "x = 1\n", "b.py": b"x = 1\n"})  # type: ignore[dict-item]

    assert result.kind == "exception"
    assert "b.py" in result.error


def test_compile_python_files_reports_null_byte_as_exception() -> None:
    result = compile_python_files({"a.py": "x = 1\x00\n"})

    assert result.kind == "exception"
    assert result.error == "a.py: source contains a null byte."
