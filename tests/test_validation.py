"""Unit tests for validation.py - Device model schema validation."""

from validation import validate_device_spec, validate_link_template, validate_model_schema

from conftest import make_link

LIGHT_SCHEMA = {
    "type": "object",
    "required": ["on"],
    "properties": {
        "on": {"type": "boolean"},
        "brightness": {"type": "integer", "minimum": 0, "maximum": 100},
        "schedule": {
            "type": "object",
            "properties": {
                "off_at": {"type": "string"},
            },
        },
    },
    "additionalProperties": False,
}


class TestValidateModelSchema:
    """Tests for validate_model_schema function."""

    def test_valid_schema(self):
        """Test validation of a valid device schema."""
        is_valid, error = validate_model_schema(LIGHT_SCHEMA)
        assert is_valid is True
        assert error is None

    def test_empty_schema(self):
        """An empty schema accepts everything and is valid."""
        is_valid, error = validate_model_schema({})
        assert is_valid is True

    def test_invalid_type(self):
        """Test schema with an unknown type."""
        is_valid, error = validate_model_schema({"type": "light-bulb"})
        assert is_valid is False
        assert error.startswith("Invalid schema:")

    def test_invalid_required(self):
        """required must be a list of strings."""
        is_valid, error = validate_model_schema({"type": "object", "required": "on"})
        assert is_valid is False

    def test_invalid_nested_schema(self):
        schema = {"type": "object", "properties": {"on": {"type": 7}}}
        is_valid, error = validate_model_schema(schema)
        assert is_valid is False


class TestValidateDeviceSpec:
    """Tests for validate_device_spec function."""

    def test_valid_spec(self):
        is_valid, error = validate_device_spec({"on": True, "brightness": 40}, LIGHT_SCHEMA)
        assert is_valid is True
        assert error is None

    def test_missing_required(self):
        is_valid, error = validate_device_spec({"brightness": 40}, LIGHT_SCHEMA)
        assert is_valid is False
        assert error.startswith("(root): ")
        assert "'on' is a required property" in error

    def test_wrong_type_reports_path(self):
        is_valid, error = validate_device_spec({"on": "yes"}, LIGHT_SCHEMA)
        assert is_valid is False
        assert error.startswith("on: ")

    def test_nested_path(self):
        spec = {"on": True, "schedule": {"off_at": 2300}}
        is_valid, error = validate_device_spec(spec, LIGHT_SCHEMA)
        assert is_valid is False
        assert error.startswith("schedule.off_at: ")

    def test_all_errors_reported(self):
        spec = {"on": "yes", "brightness": 150}
        is_valid, error = validate_device_spec(spec, LIGHT_SCHEMA)
        assert is_valid is False
        parts = error.split("; ")
        assert len(parts) == 2
        assert parts[0].startswith("brightness: ")
        assert parts[1].startswith("on: ")

    def test_additional_properties(self):
        is_valid, error = validate_device_spec({"on": True, "color": "red"}, LIGHT_SCHEMA)
        assert is_valid is False
        assert "color" in error


class TestValidateLinkTemplate:
    """Tests for validate_link_template function."""

    def test_valid_template(self):
        is_valid, error = validate_link_template(make_link(), LIGHT_SCHEMA)
        assert is_valid is True
        assert error is None

    def test_invalid_template(self):
        link = make_link(template_spec={"on": True, "brightness": -1})
        is_valid, error = validate_link_template(link, LIGHT_SCHEMA)
        assert is_valid is False
        assert error.startswith("brightness: ")

    def test_model_without_schema(self):
        link = make_link(template_spec={"anything": [1, 2, 3]})
        assert validate_link_template(link, None) == (True, None)
        assert validate_link_template(link, {}) == (True, None)

    def test_template_without_spec(self):
        link = make_link()
        link.spec.template.spec = None
        assert validate_link_template(link, LIGHT_SCHEMA) == (True, None)

    def test_non_json_template_is_left_to_reconciler(self):
        link = make_link(template_spec="{broken")
        assert validate_link_template(link, LIGHT_SCHEMA) == (True, None)
