#!/usr/bin/env python3
"""nodeplan decode-plan generator.

Input:  source containing [[nodeplan]] struct and enum blocks.
Output: JSON decode plans (one per tagged definition) for a document decoder.
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import hashlib
import json
import pathlib
import re
import sys
from typing import Dict, Iterator, List, Sequence, Tuple, Union

GENERATOR_NAME = "nodeplan"
GENERATOR_VERSION = "0.1.0"
FORMAT_VERSION = "1"
ATTRIBUTE_TOKEN = "[[nodeplan]]"
DIGEST_PATTERN = re.compile(r'^\s*"digest": "([0-9a-f]{64})"', re.MULTILINE)
FIELD_ATTRIBUTE = re.compile(r"\s*\[\[(?P<body>[^\[\]]*)\]\]\s*")
VARIANT_PATTERN = re.compile(r"(?P<name>[A-Za-z_]\w*)\s*(?P<rest>.*)\Z", re.DOTALL)
CLOSERS = {"{": "}", "(": ")", "<": ">", "[": "]"}


class ParseError(RuntimeError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


# ---------------------------------------------------------------------------
# Diagnostics


@dataclasses.dataclass(frozen=True)
class Label:
    message: str
    index: int


@dataclasses.dataclass(frozen=True)
class Diagnostic:
    """One reportable problem; the first label is the primary location."""

    labels: Tuple[Label, ...]
    severity: str = "error"

    @classmethod
    def at(cls, index: int, message: str, severity: str = "error") -> "Diagnostic":
        return cls(labels=(Label(message, index),), severity=severity)

    @property
    def message(self) -> str:
        return self.labels[0].message

    @property
    def index(self) -> int:
        return self.labels[0].index

    def combine(self, other: "Diagnostic") -> "Diagnostic":
        return dataclasses.replace(self, labels=self.labels + other.labels)


def err_pair(index1: int, index2: int, text1: str, text2: str, severity: str = "error") -> Diagnostic:
    return Diagnostic.at(index1, text1, severity).combine(Diagnostic.at(index2, text2, severity))


class CompileError(RuntimeError):
    def __init__(self, diagnostics: Sequence[Diagnostic]) -> None:
        if not diagnostics:
            raise ValueError("CompileError requires at least one diagnostic")
        super().__init__(diagnostics[0].message)
        self.diagnostics = list(diagnostics)


class DecodeError(ValueError):
    def __init__(self, message: str, index: int) -> None:
        super().__init__(message)
        self.index = index


# ---------------------------------------------------------------------------
# Declarations and plans


class FieldRole(enum.Enum):
    ARGUMENT = "argument"
    ARGUMENTS = "arguments"
    PROPERTY = "property"
    PROPERTIES = "properties"
    CHILDREN = "children"


ROLE_NAMES = ", ".join(role.value for role in FieldRole)


@dataclasses.dataclass(frozen=True)
class FieldDecl:
    name: str
    type_name: str
    index: int
    role: FieldRole | None = None

    @property
    def option(self) -> bool:
        return is_option(self.type_name)


@dataclasses.dataclass(frozen=True)
class VariantDecl:
    name: str
    index: int
    unit: bool = True


@dataclasses.dataclass(frozen=True)
class StructDecl:
    name: str
    index: int
    shape: str  # named | unit | tuple
    fields: Tuple[FieldDecl, ...] = ()
    generics: str = ""
    end: int = 0


@dataclasses.dataclass(frozen=True)
class EnumDecl:
    name: str
    index: int
    variants: Tuple[VariantDecl, ...] = ()
    end: int = 0


Definition = Union[StructDecl, EnumDecl]


@dataclasses.dataclass(frozen=True)
class ArgumentSpec:
    field: str
    option: bool


@dataclasses.dataclass(frozen=True)
class PropertySpec:
    field: str
    option: bool

    @property
    def name(self) -> str:
        return self.field


@dataclasses.dataclass(frozen=True)
class ExtraField:
    field: str
    kind: str = "default"


@dataclasses.dataclass(frozen=True)
class DecodePlan:
    name: str
    arguments: Tuple[ArgumentSpec, ...]
    var_args: str | None
    properties: Tuple[PropertySpec, ...]
    var_props: str | None
    children: str | None
    children_only: bool
    extra_fields: Tuple[ExtraField, ...]
    generics: str = ""

    def all_fields(self) -> List[str]:
        res: List[str] = []
        res.extend(a.field for a in self.arguments)
        if self.var_args is not None:
            res.append(self.var_args)
        res.extend(p.field for p in self.properties)
        if self.var_props is not None:
            res.append(self.var_props)
        if self.children is not None:
            res.append(self.children)
        res.extend(f.field for f in self.extra_fields)
        return res


@dataclasses.dataclass(frozen=True)
class UnitStructPlan:
    name: str
    generics: str = ""
    children_only: bool = True


@dataclasses.dataclass(frozen=True)
class TypeName:
    name: str
    index: int


@dataclasses.dataclass(frozen=True)
class Literal:
    kind: str  # string | int | decimal | bool | null
    value: object
    index: int = 0
    type_name: TypeName | None = None


@dataclasses.dataclass(frozen=True)
class VariantSpec:
    ident: str
    tag: str
    index: int = 0


@dataclasses.dataclass(frozen=True)
class EnumSchema:
    name: str
    variants: Tuple[VariantSpec, ...]
    warnings: Tuple[Diagnostic, ...] = dataclasses.field(default=(), compare=False)

    @property
    def value_error(self) -> str:
        return scalar_value_error([v.tag for v in self.variants])

    @property
    def type_name_error(self) -> str:
        return f"unexpected type name for {self.name}"

    def decode(self, literal: Literal) -> str:
        """Return the identifier of the variant whose tag equals the literal."""
        if literal.type_name is not None:
            raise DecodeError(self.type_name_error, literal.type_name.index)
        if literal.kind != "string":
            raise DecodeError("expected string value", literal.index)
        for variant in self.variants:
            if literal.value == variant.tag:
                return variant.ident
        raise DecodeError(self.value_error, literal.index)


Plan = Union[DecodePlan, UnitStructPlan, EnumSchema]


# ---------------------------------------------------------------------------
# Role classification


def normalize_type(type_name: str) -> str:
    return " ".join(type_name.strip().split())


def is_option(type_name: str) -> bool:
    # Only the bare `Option<...>` spelling counts; qualified paths do not.
    head = normalize_type(type_name).split("<", 1)[0].strip()
    return head == "Option"


def check_unique_fields(fields: Sequence[FieldDecl]) -> None:
    seen: Dict[str, FieldDecl] = {}
    for fld in fields:
        prev = seen.get(fld.name)
        if prev is not None:
            raise CompileError([
                err_pair(fld.index, prev.index,
                         f"duplicate field `{fld.name}`",
                         f"first `{fld.name}` is defined here")
            ])
        seen[fld.name] = fld


def classify_fields(name: str, fields: Sequence[FieldDecl], generics: str = "") -> DecodePlan:
    arguments: List[ArgumentSpec] = []
    var_args: FieldDecl | None = None
    properties: List[PropertySpec] = []
    var_props: FieldDecl | None = None
    children: FieldDecl | None = None
    extra_fields: List[ExtraField] = []

    for fld in fields:
        if fld.role is FieldRole.ARGUMENT:
            if var_args is not None:
                raise CompileError([
                    err_pair(fld.index, var_args.index,
                             "extra `argument` after capture all `arguments`",
                             "capture all `arguments` is defined here")
                ])
            arguments.append(ArgumentSpec(field=fld.name, option=fld.option))
        elif fld.role is FieldRole.ARGUMENTS:
            if var_args is not None:
                raise CompileError([
                    err_pair(fld.index, var_args.index,
                             "only single `arguments` allowed",
                             "previous `arguments` is defined here")
                ])
            var_args = fld
        elif fld.role is FieldRole.PROPERTY:
            if var_props is not None:
                raise CompileError([
                    err_pair(fld.index, var_props.index,
                             "extra `property` after capture all `properties`",
                             "capture all `properties` is defined here")
                ])
            properties.append(PropertySpec(field=fld.name, option=fld.option))
        elif fld.role is FieldRole.PROPERTIES:
            if var_props is not None:
                raise CompileError([
                    err_pair(fld.index, var_props.index,
                             "only single `properties` is allowed",
                             "previous `properties` is defined here")
                ])
            var_props = fld
        elif fld.role is FieldRole.CHILDREN:
            if children is not None:
                raise CompileError([
                    err_pair(fld.index, children.index,
                             "only single catch all `children` is allowed",
                             "previous `children` is defined here")
                ])
            children = fld
        elif fld.role is None:
            extra_fields.append(ExtraField(field=fld.name))
        else:
            raise ValueError(f"unknown field role: {fld.role!r}")

    return DecodePlan(
        name=name,
        generics=generics,
        children_only=(
            not arguments and not properties and var_args is None and var_props is None
        ),
        arguments=tuple(arguments),
        var_args=var_args.name if var_args is not None else None,
        properties=tuple(properties),
        var_props=var_props.name if var_props is not None else None,
        children=children.name if children is not None else None,
        extra_fields=tuple(extra_fields),
    )


# ---------------------------------------------------------------------------
# Scalar enums


def split_words(ident: str) -> List[str]:
    """Split an identifier into words for tag derivation.

    Words are first separated on every non-alphanumeric character. Inside a
    chunk, a boundary goes after a lowercase letter followed by an uppercase
    one, and before the last letter of an uppercase run when that letter is
    followed by a lowercase one. Digits take the case of what precedes them,
    so ``Foo2Bar`` splits as ``Foo2``/``Bar`` while ``A2B`` stays whole.
    Generated tags are matched literally by document authors; changing these
    rules changes the accepted input.
    """
    words: List[str] = []
    for chunk in re.split(r"[\W_]+", ident):
        if not chunk:
            continue
        init = 0
        mode = "boundary"
        for i, ch in enumerate(chunk):
            if i + 1 == len(chunk):
                words.append(chunk[init:])
                break
            nxt = chunk[i + 1]
            if ch.islower():
                next_mode = "lower"
            elif ch.isupper():
                next_mode = "upper"
            else:
                next_mode = mode
            if next_mode == "lower" and nxt.isupper():
                words.append(chunk[init : i + 1])
                init = i + 1
                mode = "boundary"
            elif mode == "upper" and ch.isupper() and nxt.islower():
                words.append(chunk[init:i])
                init = i
                mode = "boundary"
            else:
                mode = next_mode
    return words


def to_kebab_case(ident: str) -> str:
    return "-".join(word.lower() for word in split_words(ident))


_ESCAPES = {"\t": "\\t", "\r": "\\r", "\n": "\\n", "\\": "\\\\", "'": "\\'", '"': '\\"'}


def escape_default(text: str) -> str:
    out: List[str] = []
    for ch in text:
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif " " <= ch <= "~":
            out.append(ch)
        else:
            out.append(f"\\u{{{ord(ch):x}}}")
    return "".join(out)


def scalar_value_error(tags: Sequence[str]) -> str:
    if len(tags) <= 3:
        return "expected one of " + ", ".join(f"`{escape_default(tag)}`" for tag in tags)
    return (
        f"expected `{escape_default(tags[0])}`, `{escape_default(tags[1])}`, "
        f"or {len(tags) - 2} others"
    )


def compile_enum(name: str, variants: Sequence[VariantDecl]) -> EnumSchema:
    diagnostics: List[Diagnostic] = []
    specs: List[VariantSpec] = []
    for var in variants:
        if not var.unit:
            diagnostics.append(
                Diagnostic.at(var.index, "only unit variants are allowed for DecodeScalar")
            )
            continue
        specs.append(VariantSpec(ident=var.name, tag=to_kebab_case(var.name), index=var.index))
    if diagnostics:
        raise CompileError(diagnostics)

    # Dispatch is first-declared-wins; later duplicates are unreachable.
    warnings: List[Diagnostic] = []
    first_by_tag: Dict[str, VariantSpec] = {}
    for spec in specs:
        first = first_by_tag.setdefault(spec.tag, spec)
        if first is not spec:
            warnings.append(
                err_pair(spec.index, first.index,
                         f"variant `{spec.ident}` derives tag `{spec.tag}` which is already taken",
                         f"`{spec.tag}` is first derived from `{first.ident}` here",
                         severity="warning")
            )

    return EnumSchema(name=name, variants=tuple(specs), warnings=tuple(warnings))


def compile_definition(decl: Definition) -> Plan:
    if isinstance(decl, EnumDecl):
        return compile_enum(decl.name, decl.variants)
    if decl.shape == "tuple":
        raise CompileError([Diagnostic.at(decl.index, "tuple structs are not supported")])
    if decl.shape == "unit":
        return UnitStructPlan(name=decl.name, generics=decl.generics)
    check_unique_fields(decl.fields)
    return classify_fields(decl.name, decl.fields, decl.generics)


def compile_all(definitions: Sequence[Definition]) -> Tuple[List[Plan], List[Diagnostic]]:
    plans: List[Plan] = []
    diagnostics: List[Diagnostic] = []
    for decl in definitions:
        try:
            plan = compile_definition(decl)
        except CompileError as e:
            diagnostics.extend(e.diagnostics)
            continue
        if isinstance(plan, EnumSchema):
            diagnostics.extend(plan.warnings)
        plans.append(plan)
    return plans, diagnostics


# ---------------------------------------------------------------------------
# Declaration reader


def line_col(text: str, index: int) -> Tuple[int, int]:
    line = text.count("\n", 0, index) + 1
    line_start = text.rfind("\n", 0, index)
    col = index - line_start
    return line, col


def fail(path: pathlib.Path, text: str, error: ParseError) -> None:
    line, col = line_col(text, error.index)
    print(f"{path}:{line}:{col}: error: {error}", file=sys.stderr)


def report(path: pathlib.Path, text: str, diagnostic: Diagnostic) -> None:
    for n, label in enumerate(diagnostic.labels):
        line, col = line_col(text, label.index)
        kind = diagnostic.severity if n == 0 else "note"
        print(f"{path}:{line}:{col}: {kind}: {label.message}", file=sys.stderr)


def _blank(chars: List[str], start: int, end: int) -> None:
    for k in range(start, end):
        if chars[k] != "\n":
            chars[k] = " "


def literal_end(text: str, i: int) -> int:
    """Return the index just past the literal opening at text[i], or -1.

    A single quote opens a character literal only when it closes after one
    plain or escaped character; otherwise it is a lifetime (`'a`) or a digit
    separator (`1'000`) and stays code. An unterminated string runs to the end.
    """
    n = len(text)
    if text[i] == "'":
        if i + 2 < n and text[i + 1] not in "'\\\n" and text[i + 2] == "'":
            return i + 3
        if i + 1 < n and text[i + 1] == "\\":
            close = text.find("'", i + 3, i + 12)
            if close != -1 and "\n" not in text[i:close]:
                return close + 1
        return -1

    j = i + 1
    while j < n:
        if text[j] == "\\":
            j += 2
            continue
        if text[j] == '"':
            return j + 1
        j += 1
    return n


def blank_comments(text: str) -> str:
    """Replace comments with spaces so offsets and line numbers are preserved."""
    chars = list(text)
    i = 0
    n = len(text)

    while i < n:
        if text.startswith("//", i):
            j = text.find("\n", i + 2)
            if j == -1:
                j = n
            _blank(chars, i, j)
            i = j
            continue
        if text.startswith("/*", i):
            j = text.find("*/", i + 2)
            if j == -1:
                raise ParseError("unterminated block comment", i)
            _blank(chars, i, j + 2)
            i = j + 2
            continue
        if text[i] in "\"'":
            end = literal_end(text, i)
            if end != -1:
                i = end
                continue
        i += 1

    return "".join(chars)


def iter_code(text: str, start: int = 0) -> Iterator[int]:
    """Yield indices outside string and character literals (comments already blanked)."""
    i = start
    n = len(text)
    while i < n:
        if text[i] in "\"'":
            end = literal_end(text, i)
            if end != -1:
                i = end
                continue
        yield i
        i += 1


def skip_ws(text: str, i: int) -> int:
    n = len(text)
    while i < n and text[i].isspace():
        i += 1
    return i


def parse_identifier(text: str, i: int) -> Tuple[str, int]:
    m = re.match(r"[A-Za-z_]\w*", text[i:])
    if not m:
        raise ParseError("expected identifier", i)
    ident = m.group(0)
    return ident, i + len(ident)


def find_attribute_positions(text: str) -> List[int]:
    return [i for i in iter_code(text) if text.startswith(ATTRIBUTE_TOKEN, i)]


def find_matching(text: str, open_index: int) -> int:
    open_ch = text[open_index] if open_index < len(text) else ""
    if open_ch not in CLOSERS:
        raise ParseError("internal error: expected opening bracket", open_index)

    close_ch = CLOSERS[open_ch]
    depth = 0
    for i in iter_code(text, open_index):
        if text[i] == open_ch:
            depth += 1
        elif text[i] == close_ch:
            depth -= 1
            if depth == 0:
                return i
    raise ParseError(f"unbalanced '{open_ch}'", open_index)


def split_top_level(
    text: str,
    start: int,
    end: int,
    separator: str,
    require_terminator: bool = True,
    empty_message: str | None = None,
) -> List[Tuple[str, int]]:
    """Split text[start:end] on top-level separators into (item, absolute index) pairs."""
    items: List[Tuple[str, int]] = []
    depth = 0
    item_start = start

    def push(item_end: int) -> None:
        raw = text[item_start:item_end]
        item = raw.strip()
        if not item and empty_message is not None:
            raise ParseError(empty_message, item_end)
        if item:
            items.append((item, item_start + len(raw) - len(raw.lstrip())))

    for i in iter_code(text, start):
        if i >= end:
            break
        ch = text[i]
        if ch in "{([":
            depth += 1
        elif ch in "})]":
            depth -= 1
            if depth < 0:
                raise ParseError(f"unexpected '{ch}'", i)
        elif ch == separator and depth == 0:
            push(i)
            item_start = i + 1

    if text[item_start:end].strip():
        if require_terminator:
            raise ParseError(f"expected '{separator}' after declaration", skip_ws(text, item_start))
        push(end)

    return items


def parse_field_attrs(decl: str, origin_index: int) -> Tuple[List[FieldRole], int]:
    roles: List[FieldRole] = []
    pos = 0
    while True:
        m = FIELD_ATTRIBUTE.match(decl, pos)
        if not m:
            return roles, pos
        for part in m.group("body").split(","):
            word = part.strip()
            try:
                roles.append(FieldRole(word))
            except ValueError:
                raise ParseError(
                    f"unknown field attribute '{word}'; expected one of {ROLE_NAMES}",
                    origin_index + m.start("body"),
                ) from None
        pos = m.end()


def parse_type_name_pair(decl: str, origin_index: int = 0) -> Tuple[str, str]:
    if "=" in decl:
        raise ParseError(
            "default field initializers are not supported; unannotated fields are default-filled",
            origin_index + decl.index("="),
        )

    match = re.match(r"^(?P<type>.+?)\s+(?P<name>[A-Za-z_]\w*)$", decl.strip(), re.DOTALL)
    if not match:
        raise ParseError("expected '<type> <name>' declaration", origin_index)
    if "[[" in match.group("type"):
        raise ParseError("field attributes must precede the field type", origin_index)

    return normalize_type(match.group("type")), match.group("name")


def parse_struct_fields(text: str, start: int, end: int) -> List[FieldDecl]:
    fields: List[FieldDecl] = []
    for decl, index in split_top_level(text, start, end, ";"):
        roles, offset = parse_field_attrs(decl, index)
        type_name, name = parse_type_name_pair(decl[offset:], index + offset)
        # last attribute wins when several roles are given
        role = roles[-1] if roles else None
        fields.append(
            FieldDecl(name=name, type_name=type_name, index=index + len(decl) - len(name), role=role)
        )
    return fields


def parse_enum_variants(text: str, start: int, end: int) -> List[VariantDecl]:
    variants: List[VariantDecl] = []
    for item, index in split_top_level(
        text, start, end, ",", require_terminator=False, empty_message="expected enum variant"
    ):
        m = VARIANT_PATTERN.match(item)
        if not m:
            raise ParseError("expected enum variant", index)
        rest = m.group("rest")
        rest_index = index + m.start("rest")
        if not rest:
            unit = True
        elif rest.startswith("="):
            if not rest[1:].strip():
                raise ParseError("expected discriminant expression after '='", rest_index)
            unit = True
        elif rest[0] in "({":
            close = find_matching(text, rest_index)
            if text[close + 1 : index + len(item)].strip():
                raise ParseError("unexpected tokens after enum variant fields", close + 1)
            unit = False
        else:
            raise ParseError("unexpected tokens after enum variant name", rest_index)
        variants.append(VariantDecl(name=m.group("name"), index=index, unit=unit))
    return variants


def expect_semicolon(text: str, i: int, what: str) -> int:
    i = skip_ws(text, i)
    if i >= len(text) or text[i] != ";":
        raise ParseError(f"expected ';' after {what} declaration", i)
    return i + 1


def parse_tagged_definition(text: str, attr_index: int) -> Definition:
    i = skip_ws(text, attr_index + len(ATTRIBUTE_TOKEN))
    keyword_index = i
    keyword, i = parse_identifier(text, i)
    if keyword not in ("struct", "enum"):
        raise ParseError("expected 'struct' or 'enum' after [[nodeplan]]", keyword_index)

    i = skip_ws(text, i)
    name_index = i
    name, i = parse_identifier(text, i)
    i = skip_ws(text, i)

    generics = ""
    if i < len(text) and text[i] == "<":
        if keyword == "enum":
            raise ParseError("generic scalar enums are not supported", i)
        close = find_matching(text, i)
        generics = normalize_type(text[i : close + 1])
        i = skip_ws(text, close + 1)

    if i >= len(text):
        raise ParseError(f"unexpected end of input in {keyword} declaration", i)

    if keyword == "enum":
        if text[i] != "{":
            raise ParseError("expected '{' to open enum body", i)
        close = find_matching(text, i)
        variants = parse_enum_variants(text, i + 1, close)
        end = expect_semicolon(text, close + 1, "enum")
        return EnumDecl(name=name, index=name_index, variants=tuple(variants), end=end)

    if text[i] == ";":
        return StructDecl(name=name, index=name_index, shape="unit", generics=generics, end=i + 1)
    if text[i] == "(":
        close = find_matching(text, i)
        end = expect_semicolon(text, close + 1, "struct")
        return StructDecl(name=name, index=name_index, shape="tuple", generics=generics, end=end)
    if text[i] != "{":
        raise ParseError("expected '{', '(' or ';' after struct name", i)

    close = find_matching(text, i)
    fields = parse_struct_fields(text, i + 1, close)
    end = expect_semicolon(text, close + 1, "struct")
    return StructDecl(
        name=name, index=name_index, shape="named", fields=tuple(fields), generics=generics, end=end
    )


def parse_all_definitions(text: str) -> List[Definition]:
    code = blank_comments(text)
    definitions: List[Definition] = []
    consumed_until = -1

    for pos in find_attribute_positions(code):
        if pos < consumed_until:
            continue
        decl = parse_tagged_definition(code, pos)
        definitions.append(decl)
        consumed_until = decl.end

    return definitions


# ---------------------------------------------------------------------------
# Plan writer


def plan_to_dict(plan: Plan) -> Dict[str, object]:
    if isinstance(plan, EnumSchema):
        return {
            "kind": "scalar_enum",
            "name": plan.name,
            "variants": [{"ident": v.ident, "tag": v.tag} for v in plan.variants],
            "value_error": plan.value_error,
            "type_name_error": plan.type_name_error,
        }
    if isinstance(plan, UnitStructPlan):
        return {
            "kind": "unit_struct",
            "name": plan.name,
            "generics": plan.generics,
            "children_only": plan.children_only,
        }
    return {
        "kind": "struct",
        "name": plan.name,
        "generics": plan.generics,
        "arguments": [{"field": a.field, "option": a.option} for a in plan.arguments],
        "var_args": plan.var_args,
        "properties": [
            {"name": p.name, "field": p.field, "option": p.option} for p in plan.properties
        ],
        "var_props": plan.var_props,
        "children": plan.children,
        "children_only": plan.children_only,
        "extra_fields": [{"field": f.field, "kind": f.kind} for f in plan.extra_fields],
    }


def compute_file_digest(source_bytes: bytes) -> str:
    h = hashlib.sha256()
    h.update(GENERATOR_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(FORMAT_VERSION.encode("utf-8"))
    h.update(b"\x00")
    h.update(source_bytes)
    return h.hexdigest()


def render_file(
    source_path: pathlib.Path, source_text: str, source_bytes: bytes
) -> Tuple[str, List[Diagnostic]]:
    """Render the plan document, returning it with any warnings.

    Raises CompileError (carrying warnings as well) if any error was found.
    """
    definitions = parse_all_definitions(source_text)
    plans, diagnostics = compile_all(definitions)
    if any(d.severity == "error" for d in diagnostics):
        raise CompileError(diagnostics)

    source_label = str(source_path)
    try:
        source_label = str(source_path.resolve().relative_to(pathlib.Path.cwd().resolve()))
    except ValueError:
        source_label = str(source_path.resolve())

    document = {
        "meta": {
            "generator": GENERATOR_NAME,
            "source": source_label,
            "generator_version": GENERATOR_VERSION,
            "format_version": FORMAT_VERSION,
            "digest": compute_file_digest(source_bytes),
        },
        "definitions": [plan_to_dict(plan) for plan in plans],
    }
    return json.dumps(document, indent=2) + "\n", diagnostics


def extract_existing_digest(text: str) -> str | None:
    m = DIGEST_PATTERN.search(text)
    if not m:
        return None
    return m.group(1)


def run(args: argparse.Namespace) -> int:
    in_path = pathlib.Path(args.input)
    out_path = pathlib.Path(args.output)

    if not in_path.exists():
        print(f"error: input file does not exist: {in_path}", file=sys.stderr)
        return 1

    source_bytes = in_path.read_bytes()
    source_text = source_bytes.decode("utf-8")

    try:
        rendered, warnings = render_file(in_path, source_text, source_bytes)
    except ParseError as e:
        fail(in_path, source_text, e)
        return 1
    except CompileError as e:
        for diagnostic in e.diagnostics:
            report(in_path, source_text, diagnostic)
        return 1

    for warning in warnings:
        report(in_path, source_text, warning)

    if args.check:
        if not out_path.exists():
            print(f"{out_path} is missing (run generator)", file=sys.stderr)
            return 1
        existing = out_path.read_text(encoding="utf-8")
        if existing != rendered:
            print(f"{out_path} is out of date (run generator)", file=sys.stderr)
            return 1
        print(f"up-to-date: {out_path}")
        return 0

    if out_path.exists():
        existing = out_path.read_text(encoding="utf-8")
        old_digest = extract_existing_digest(existing)
        new_digest = extract_existing_digest(rendered)
        if old_digest and new_digest and old_digest == new_digest:
            print(f"unchanged: {out_path}")
            return 0

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(rendered, encoding="utf-8")
    print(f"generated: {out_path}")
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate nodeplan decode plans from .nodeplan sources")
    parser.add_argument("--in", dest="input", required=True, help="Input .nodeplan file")
    parser.add_argument("--out", dest="output", required=True, help="Output decode plan (JSON)")
    parser.add_argument("--check", action="store_true", help="Check output is up to date")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    return run(build_arg_parser().parse_args(argv))


if __name__ == "__main__":
    raise SystemExit(main())
