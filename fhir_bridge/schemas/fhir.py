"""
JSON schemas for FHIR documents exchanged with the Client Registry.

Only the fields the bridge actually reads are constrained; everything else in
the registry's Bundle is allowed through untouched.
"""

CR_SEARCH_BUNDLE_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Client Registry patient-search Bundle (subset)",
    "description": "Response of GET /v1/patient-search; Patient.id is the CR identifier.",
    "type": "object",
    "required": ["entry"],
    "properties": {
        "resourceType": {"type": "string"},
        "entry": {
            "type": "array",
            "minItems": 1,
            # Draft-07 tuple form: only the first entry is inspected
            "items": [
                {
                    "type": "object",
                    "required": ["resource"],
                    "properties": {
                        "resource": {
                            "type": "object",
                            "required": ["id"],
                            "properties": {
                                "id": {
                                    "type": "string",
                                    "minLength": 1,
                                    "description": "CR identifier, with or without the CR- prefix.",
                                },
                            },
                        },
                    },
                }
            ],
        },
    },
}
