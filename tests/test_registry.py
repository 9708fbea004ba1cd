"""Tests for the language registry and command template rendering."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from polyexec.exceptions import UnsupportedLanguageError
from polyexec.models import ARGS_PLACEHOLDER, SOURCE_PLACEHOLDER, LanguageConfig
from polyexec.registry import (
    BUILTIN_LANGUAGES,
    LANGUAGE_ALIASES,
    TYPESCRIPT_DOCKERFILE,
    LanguageRegistry,
    render,
    source_path,
)

# ============================================================================
# Helpers
# ============================================================================


def _make_language(**overrides: object) -> LanguageConfig:
    values: dict[str, object] = {
        "id": "lua",
        "display_name": "Lua",
        "image": "nickblah/lua:5.4-alpine",
        "file_extension": ".lua",
        "source_filename": "main.lua",
        "run_command": ("lua", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER),
        "default_timeout_ms": 5_000,
        "memory_limit_bytes": 64 * 1024 * 1024,
    }
    values.update(overrides)
    return LanguageConfig(**values)  # type: ignore[arg-type]


# ============================================================================
# Built-in languages
# ============================================================================


class TestBuiltinLanguages:
    def test_expected_languages_registered(self, registry: LanguageRegistry) -> None:
        assert set(registry.ids()) == {
            "python",
            "javascript",
            "typescript",
            "ruby",
            "php",
            "shell",
            "c",
            "cpp",
            "java",
            "go",
            "rust",
        }

    def test_every_language_isolated(self) -> None:
        for lang in BUILTIN_LANGUAGES:
            assert lang.network_disabled is True, lang.id
            assert lang.run_as_non_root is True, lang.id

    def test_every_run_command_uses_source_or_binary(self) -> None:
        """Interpreted languages run the source; compiled ones run the build output."""
        for lang in BUILTIN_LANGUAGES:
            if lang.compiled:
                assert any(SOURCE_PLACEHOLDER in token for token in lang.compile_command or ()), lang.id
            else:
                assert SOURCE_PLACEHOLDER in lang.run_command, lang.id

    def test_compiled_flag(self, registry: LanguageRegistry) -> None:
        assert registry.resolve("c").compiled is True
        assert registry.resolve("rust").compiled is True
        assert registry.resolve("python").compiled is False

    def test_java_source_named_after_main_class(self, registry: LanguageRegistry) -> None:
        java = registry.resolve("java")
        assert java.main_class == "Main"
        assert java.source_filename == "Main.java"

    def test_aliases_point_at_registered_languages(self, registry: LanguageRegistry) -> None:
        for alias, target in LANGUAGE_ALIASES.items():
            assert registry.resolve(alias).id == target


# ============================================================================
# Resolve
# ============================================================================


class TestResolve:
    def test_resolve_by_id(self, registry: LanguageRegistry) -> None:
        assert registry.resolve("python").display_name == "Python"

    def test_resolve_case_insensitive_and_trimmed(self, registry: LanguageRegistry) -> None:
        assert registry.resolve("  PyThOn ").id == "python"

    def test_resolve_alias(self, registry: LanguageRegistry) -> None:
        assert registry.resolve("c++").id == "cpp"
        assert registry.resolve("Golang").id == "go"

    def test_unknown_language_raises(self, registry: LanguageRegistry) -> None:
        with pytest.raises(UnsupportedLanguageError) as exc_info:
            registry.resolve("cobol")
        assert exc_info.value.context["language"] == "cobol"
        assert "python" in exc_info.value.context["supported"]

    def test_contains(self, registry: LanguageRegistry) -> None:
        assert "rust" in registry
        assert "rs" in registry
        assert "cobol" not in registry
        assert 42 not in registry

    def test_resolve_returns_shared_instance(self, registry: LanguageRegistry) -> None:
        assert registry.resolve("go") is registry.resolve("golang")


# ============================================================================
# Construction
# ============================================================================


class TestConstruction:
    def test_image_override_applied(self) -> None:
        registry = LanguageRegistry(image_overrides={"Python": "python:3.12-slim"})
        assert registry.resolve("python").image == "python:3.12-slim"
        # Other languages untouched
        assert registry.resolve("ruby").image == "ruby:3.2-alpine"

    def test_image_override_for_unknown_language_ignored(self) -> None:
        registry = LanguageRegistry(image_overrides={"cobol": "cobol:latest"})
        assert "cobol" not in registry

    def test_custom_language_set(self) -> None:
        registry = LanguageRegistry(languages=[_make_language()], aliases={"lua5": "lua", "py": "python"})
        assert registry.ids() == ["lua"]
        assert registry.resolve("lua5").id == "lua"
        # Aliases to unregistered languages are dropped
        assert "py" not in registry

    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            LanguageRegistry(languages=[_make_language(), _make_language()])

    def test_images_deduplicated(self, registry: LanguageRegistry) -> None:
        images = registry.images()
        # c and cpp share gcc
        assert len(images) < len(registry)
        assert "gcc:latest" in images

    def test_typescript_image_built_locally(self, registry: LanguageRegistry) -> None:
        typescript = registry.resolve("ts")
        assert typescript.dockerfile is not None
        assert "typescript" in typescript.dockerfile
        assert typescript.image != registry.resolve("javascript").image
        # Every other runtime is pulled as published
        assert [lang.id for lang in BUILTIN_LANGUAGES if lang.dockerfile] == ["typescript"]

    def test_image_override_drops_build_recipe(self) -> None:
        registry = LanguageRegistry(image_overrides={"typescript": "registry.local/tsc:5"})
        typescript = registry.resolve("typescript")
        assert typescript.image == "registry.local/tsc:5"
        assert typescript.dockerfile is None

    def test_image_recipes(self, registry: LanguageRegistry) -> None:
        recipes = registry.image_recipes()
        assert set(recipes) == registry.images()
        assert recipes["gcc:latest"] is None
        assert recipes[registry.resolve("typescript").image] == TYPESCRIPT_DOCKERFILE

    def test_image_recipes_for_selected_languages(self, registry: LanguageRegistry) -> None:
        assert registry.image_recipes(["c", "c++"]) == {"gcc:latest": None}
        with pytest.raises(UnsupportedLanguageError):
            registry.image_recipes(["cobol"])

    def test_list_languages_hides_images_and_commands(self, registry: LanguageRegistry) -> None:
        infos = registry.list_languages()
        assert len(infos) == len(registry)
        python = next(info for info in infos if info.id == "python")
        assert python.file_extension == ".py"
        assert not hasattr(python, "image")


class TestLanguageConfig:
    def test_isolation_flags_cannot_be_disabled(self) -> None:
        with pytest.raises(PydanticValidationError):
            _make_language(network_disabled=False)
        with pytest.raises(PydanticValidationError):
            _make_language(run_as_non_root=False)

    def test_frozen(self) -> None:
        lang = _make_language()
        with pytest.raises(PydanticValidationError):
            lang.image = "other"  # type: ignore[misc]

    def test_extension_requires_dot(self) -> None:
        with pytest.raises(PydanticValidationError):
            _make_language(file_extension="lua")


# ============================================================================
# Rendering
# ============================================================================


class TestRender:
    def test_source_substituted(self, registry: LanguageRegistry) -> None:
        python = registry.resolve("python")
        argv = render(python.run_command, source_path(python))
        assert argv == ["python3", "-u", "/sandbox/main.py"]

    def test_args_expand_to_separate_entries(self, registry: LanguageRegistry) -> None:
        python = registry.resolve("python")
        argv = render(python.run_command, source_path(python), ["a b", "--flag", ""])
        assert argv[-3:] == ["a b", "--flag", ""]

    def test_args_not_searched_for_placeholders(self) -> None:
        argv = render(("run", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER), "/sandbox/x", [SOURCE_PLACEHOLDER, "$(id)"])
        assert argv == ["run", "/sandbox/x", SOURCE_PLACEHOLDER, "$(id)"]

    def test_placeholder_inside_token(self) -> None:
        argv = render(("tool", f"--input={SOURCE_PLACEHOLDER}"), "/sandbox/main.x")
        assert argv == ["tool", "--input=/sandbox/main.x"]

    def test_compile_command_renders_source(self, registry: LanguageRegistry) -> None:
        c = registry.resolve("c")
        assert c.compile_command is not None
        argv = render(c.compile_command, source_path(c))
        assert "/sandbox/main.c" in argv
        assert argv[0] == "gcc"
