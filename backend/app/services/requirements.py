"""Document requirement rules.

Maps a classified document type and whether the document is already in
the working language onto its apostille, translation and validity
obligations. The table is fixed; nothing here is edited by hand or
depends on anything but its two inputs.
"""

from app.models import DocumentRequirements, DocumentType, Requirement

WORKING_LANGUAGE = "Spanish"
VALIDITY_PERIOD = "6 months"

# Identity documents are checked for validity only.
IDENTITY_DOCUMENT_TYPES = frozenset(
    {
        DocumentType.PASSPORT,
        DocumentType.IDENTITY_DOCUMENT,
        DocumentType.RESIDENCY_CARD,
    }
)


def get_document_requirements(
    document_type: DocumentType, *, is_working_language: bool
) -> DocumentRequirements:
    if document_type in IDENTITY_DOCUMENT_TYPES:
        return DocumentRequirements(
            apostille=Requirement(
                is_required=False,
                description="No apostille or legalization required",
            ),
            translation=Requirement(
                is_required=False,
                description="No translation required",
            ),
            validity=Requirement(
                is_required=True,
                description="Minimum 6 months validity",
                validity_period=VALIDITY_PERIOD,
            ),
        )

    if is_working_language:
        translation = Requirement(
            is_required=False,
            description=f"No translation required (document in {WORKING_LANGUAGE})",
        )
    else:
        translation = Requirement(
            is_required=True,
            description=f"Requires translation to {WORKING_LANGUAGE}",
        )

    if document_type == DocumentType.CRIMINAL_RECORD_CERTIFICATE:
        validity = Requirement(
            is_required=True,
            description="Maximum validity of 6 months",
            validity_period=VALIDITY_PERIOD,
        )
    else:
        validity = Requirement(is_required=False, description="No validity period")

    return DocumentRequirements(
        apostille=Requirement(
            is_required=True,
            description="Requires mandatory apostille or legalization",
        ),
        translation=translation,
        validity=validity,
    )
