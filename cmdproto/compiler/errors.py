"""Errors raised while compiling a command protocol."""


class CompilerError(RuntimeError):
    """Base class for errors that abort a compiler run."""


class SchemaConflict(CompilerError):
    """A command or resource carries mutually exclusive generation directives."""


class UnresolvedType(CompilerError):
    """A field references a type the model reader could not resolve."""

    def __init__(self, owner: str, field_name: str, type_name: str):
        super().__init__(f"{owner}.{field_name}: unknown type '{type_name}'")
        self.owner = owner
        self.field_name = field_name
        self.type_name = type_name


class ConfigurationError(CompilerError):
    """Compiler options or the revision record are invalid."""


class LayoutInvariantViolation(AssertionError):
    """Two layouts disagree, or a layout has a gap or overlap.

    This is an internal defect, not a user error; callers never catch it.
    """


class ModelError(CompilerError):
    """The model document is malformed (missing names, bad sizes, unknown tags)."""
