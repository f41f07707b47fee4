"""Exceptions and warning categories raised by genesetdb."""


class GeneSetDbError(ValueError):
    """Base class for all genesetdb errors."""


class ConstructionError(GeneSetDbError):
    """The input used to build a GeneSetDb is malformed or ambiguous."""


class SchemaError(GeneSetDbError):
    """One of the GeneSetDb relations violates an invariant."""


class SetNotFoundError(GeneSetDbError, KeyError):
    """A (collection, name) pair or collection is not defined in the GeneSetDb."""

    def __str__(self):
        # KeyError quotes its message; keep the plain ValueError rendering
        return str(self.args[0]) if self.args else ""


class MalformedKeyError(GeneSetDbError):
    """An encoded gene set key could not be decoded."""


class ResultAlignmentError(GeneSetDbError):
    """An external method result could not be re-keyed onto the GeneSetDb."""


class NotConformedError(GeneSetDbError):
    """The operation needs a GeneSetDb that has been conformed to a universe."""


class GeneSetDbWarning(UserWarning):
    """Recoverable problem found while building or querying a GeneSetDb."""


class LowMatchFractionWarning(GeneSetDbWarning):
    """Few GeneSetDb features were found in the conform universe."""


class MethodFailedWarning(GeneSetDbWarning):
    """An enrichment method failed and was dropped from the result."""
