"""Draft mapping generation from sampled raw records."""

from clinic_migrate.models.mapping import RuleKind
from clinic_migrate.services.mapping_generator import (
    DEFAULT_CONFIDENCE,
    EXACT_CONFIDENCE,
    MappingGenerator,
    flatten_field_paths,
    normalize_field_name,
)


def by_target(entity_mapping):
    return {fm.target_field: fm for fm in entity_mapping.field_mappings}


class TestHelpers:

    def test_normalize_field_name(self):
        assert normalize_field_name("First_Name") == "firstname"
        assert normalize_field_name("e-mail Address") == "emailaddress"

    def test_flatten_field_paths(self):
        record = {"id": 1, "name": [{"given": ["Ada"], "family": "L"}], "meta": {"tag": "x"}}
        assert flatten_field_paths(record) == [
            "id", "name.0.given", "name.0.given.0", "name.0.family", "meta.tag",
        ]


class TestMappingGenerator:
    """Alias matching, confidence and fallbacks."""

    def test_exact_aliases_are_confident(self):
        samples = {"patient": [{"first_name": "Ada", "Last Name": "L", "EMAIL": "a@b.co", "dob": "1990-01-01"}]}
        mappings, unmapped = MappingGenerator().generate(samples, {"patient": "clients"})

        patient = mappings["patient"]
        fields = by_target(patient)
        assert patient.source_entity == "clients"
        assert fields["firstName"].source_field == "first_name"
        assert fields["lastName"].source_field == "Last Name"
        assert fields["email"].rule == RuleKind.COERCE
        assert fields["email"].config == {"to": "email"}
        assert fields["dateOfBirth"].config == {"to": "date"}
        assert all(fm.confidence == EXACT_CONFIDENCE for fm in patient.field_mappings)
        assert patient.requires_approval == []
        assert unmapped == {}

    def test_full_name_is_split(self):
        mappings, _ = MappingGenerator().generate({"patient": [{"Client Name": "Ada Lovelace"}]})
        fields = by_target(mappings["patient"])

        assert fields["firstName"].rule == RuleKind.DERIVED
        assert fields["firstName"].config == {"op": "split_name", "part": "first"}
        assert fields["lastName"].config == {"op": "split_name", "part": "last"}

    def test_partial_matches_need_approval(self):
        mappings, _ = MappingGenerator().generate({"patient": [{"firstname": "A", "lastname": "B", "cell_phone_nbr": "1"}]})
        patient = mappings["patient"]

        assert by_target(patient)["phone"].source_field == "cell_phone_nbr"
        assert patient.requires_approval == ["phone"]

    def test_status_uses_enum_map(self):
        mappings, _ = MappingGenerator().generate({
            "appointment": [{"clientId": "c1", "staff": "Dr. S", "startsAt": "2024-01-01T09:00", "state": "Booked"}]
        })
        fields = by_target(mappings["appointment"])

        assert fields["patientSourceId"].source_field == "clientId"
        assert fields["status"].rule == RuleKind.DERIVED
        assert fields["status"].config["op"] == "enum_map"
        assert fields["status"].config["map"]["booked"] == "scheduled"

    def test_missing_status_gets_default_needing_approval(self):
        mappings, _ = MappingGenerator().generate({"invoice": [{"patientId": "p1", "amount": "10.00"}]})
        invoice = mappings["invoice"]
        status = by_target(invoice)["status"]

        assert status.rule == RuleKind.DEFAULT
        assert status.config == {"value": "open"}
        assert status.confidence == DEFAULT_CONFIDENCE
        assert "status" in invoice.requires_approval

    def test_unmapped_fields_reported(self):
        _, unmapped = MappingGenerator().generate({"patient": [{"firstname": "A", "lastname": "B", "loyalty_tier": "gold"}]})
        assert unmapped == {"patient": ["loyalty_tier"]}

    def test_non_canonical_entities_skipped(self):
        mappings, unmapped = MappingGenerator().generate({"giftcard": [{"code": "X"}]})
        assert mappings == {}
        assert unmapped == {}

    def test_fhir_patient_paths(self):
        resource = {
            "resourceType": "Patient",
            "id": "f1",
            "name": [{"family": "Lovelace", "given": ["Ada"]}],
            "birthDate": "1990-01-01",
        }
        fields = by_target(MappingGenerator().generate({"patient": [resource]})[0]["patient"])

        assert fields["firstName"].source_field == "name.0.given.0"
        assert fields["lastName"].source_field == "name.0.family"
        assert fields["dateOfBirth"].source_field == "birthDate"
