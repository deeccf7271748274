"""
Unit tests for recursive form payload validation.
"""

import io
from datetime import datetime

import pytest
from werkzeug.datastructures import FileStorage

from formguard.utils.validators import (
    CIRCULAR_REFERENCE_ERROR,
    FORM_DATA_REQUIRED_ERROR,
    FORM_DATA_STRUCTURE_ERROR,
    FORM_DATA_TYPE_ERROR,
    SANITIZE_FAILURE_ERROR,
    FormDataValidator,
    FormValidationResult,
    sanitize_input,
    validate_form_data,
)
from tests.fixtures.file_samples import PNG_BYTES, make_file


class Unprintable:
    def __str__(self):
        raise ValueError("no text form")


class ExplodingMapping(dict):
    def items(self):
        raise RuntimeError("getter failed")


@pytest.fixture
def validator():
    return FormDataValidator()


@pytest.mark.unit
class TestFormDataValidator:
    """Shape handling and per-field routing of FormDataValidator."""

    def test_plain_and_html_fields_are_routed_by_name(self, validator):
        result = validator.validate_form_data({
            'name': '<b>Bold</b>',
            'content': '<p>ok</p><script>x</script>'
        })

        assert result.is_valid
        assert result.sanitized == {'name': 'Bold', 'content': '<p>ok</p>'}

    def test_missing_payload_is_rejected(self, validator):
        result = validator.validate_form_data(None)

        assert result.is_valid is False
        assert result.errors == [FORM_DATA_REQUIRED_ERROR]
        assert result.sanitized == {}

    @pytest.mark.parametrize('payload', ['just text', 42, ['a', 'b'], True])
    def test_non_mapping_payload_is_rejected(self, validator, payload):
        result = validator.validate_form_data(payload)

        assert result.errors == [FORM_DATA_TYPE_ERROR]
        assert result.sanitized == {}

    def test_nested_mappings_keep_their_shape(self, validator):
        result = validator.validate_form_data({
            'profile': {
                'bio': '<i>quiet</i> person',
                'description': '<p>hello</p><iframe src="x"></iframe>'
            }
        })

        assert result.sanitized == {
            'profile': {'bio': 'quiet person', 'description': '<p>hello</p>'}
        }

    def test_sequences_are_sanitized_element_wise(self, validator):
        result = validator.validate_form_data({
            'tags': ['<b>a</b>', 1, None, {'label': '<i>b</i>'}, ['<u>c</u>'], ('<em>d</em>',)]
        })

        assert result.sanitized['tags'] == ['a', 1, None, {'label': 'b'}, ['c'], ['d']]

    def test_primitives_pass_through(self, validator):
        payload = {'age': 30, 'subscribed': True, 'ratio': 1.5, 'middle_name': None}

        assert validator.validate_form_data(payload).sanitized == payload

    def test_other_objects_are_coerced_to_text(self, validator):
        result = validator.validate_form_data({'when': datetime(2024, 1, 1)})

        assert result.sanitized['when'] == '2024-01-01 00:00:00'

    def test_file_handles_pass_through_by_reference(self, validator):
        handle = make_file()
        storage = FileStorage(stream=io.BytesIO(PNG_BYTES), filename='photo.png', content_type='image/png')

        result = validator.validate_form_data({'avatar': handle, 'gallery': [storage]})

        assert result.sanitized['avatar'] is handle
        assert result.sanitized['gallery'][0] is storage

    def test_field_error_does_not_abort_the_walk(self, validator):
        result = validator.validate_form_data({'broken': Unprintable(), 'name': '<b>Ann</b>'})

        assert result.errors == [f"broken: {SANITIZE_FAILURE_ERROR}"]
        assert result.sanitized == {'broken': '', 'name': 'Ann'}

    def test_nested_errors_bubble_up_with_field_prefix(self, validator):
        result = validator.validate_form_data({'profile': {'a': Unprintable(), 'b': Unprintable()}})

        assert result.errors == [
            f"profile: a: {SANITIZE_FAILURE_ERROR}, b: {SANITIZE_FAILURE_ERROR}"
        ]

    def test_sequence_errors_carry_the_element_index(self, validator):
        result = validator.validate_form_data({'items': ['fine', Unprintable()]})

        assert result.errors == [f"items: [1] {SANITIZE_FAILURE_ERROR}"]
        assert result.sanitized['items'] == ['fine', '']

    def test_self_referential_mapping_is_detected(self, validator):
        payload = {'name': 'loop'}
        payload['self'] = payload

        result = validator.validate_form_data(payload)

        assert result.errors == [CIRCULAR_REFERENCE_ERROR]
        assert result.sanitized == {}

    def test_self_referential_sequence_is_detected(self, validator):
        items = ['a']
        items.append(items)

        result = validator.validate_form_data({'items': items})

        assert result.errors == [CIRCULAR_REFERENCE_ERROR]

    def test_shared_subtrees_are_not_cycles(self, validator):
        shared = {'label': '<b>x</b>'}

        result = validator.validate_form_data({'first': shared, 'second': shared})

        assert result.is_valid
        assert result.sanitized == {'first': {'label': 'x'}, 'second': {'label': 'x'}}

    def test_unwalkable_mapping_yields_structure_error(self, validator):
        result = validator.validate_form_data({'nested': ExplodingMapping(a='b')})

        assert result.errors == [FORM_DATA_STRUCTURE_ERROR]
        assert result.sanitized == {}

    def test_custom_html_field_predicate(self):
        validator = FormDataValidator(html_field_predicate=lambda name: name == 'body')

        result = validator.validate_form_data({'body': '<p>x</p>', 'content': '<p>y</p>'})

        assert result.sanitized == {'body': '<p>x</p>', 'content': 'y'}


@pytest.mark.unit
class TestFieldLevelOperations:

    def test_validate_and_sanitize_field(self, validator):
        result = validator.validate_and_sanitize_field('title', '<b>x</b>')

        assert result.is_valid
        assert result.sanitized == 'x'

    def test_validate_and_sanitize_field_reports_nested_errors(self, validator):
        result = validator.validate_and_sanitize_field('profile', {'bio': Unprintable()})

        assert result.is_valid is False
        assert result.error == f"bio: {SANITIZE_FAILURE_ERROR}"

    def test_validate_and_sanitize_field_reports_cycles(self, validator):
        section = {'title': 'loop'}
        section['self'] = section

        result = validator.validate_and_sanitize_field('section', section)

        assert result.is_valid is False
        assert result.sanitized == {}
        assert result.error == CIRCULAR_REFERENCE_ERROR

    def test_validate_and_sanitize_field_reports_unwalkable_values(self, validator):
        result = validator.validate_and_sanitize_field('section', ExplodingMapping(a='b'))

        assert result.is_valid is False
        assert result.sanitized == {}
        assert result.error == FORM_DATA_STRUCTURE_ERROR

    def test_sanitize_input_never_raises(self):
        result = sanitize_input(Unprintable())

        assert result.is_valid is False
        assert result.sanitized == ''
        assert result.to_dict() == {'is_valid': False, 'sanitized': '', 'error': SANITIZE_FAILURE_ERROR}

    def test_sanitize_input_with_html(self):
        assert sanitize_input('<p>x</p><script>y</script>', allow_html=True).sanitized == '<p>x</p>'

    def test_module_level_validate_form_data(self):
        assert validate_form_data({'q': 'javascript:alert(1)'}).sanitized == {'q': 'alert(1)'}

    def test_validity_is_derived_from_errors(self):
        assert FormValidationResult({}, []).is_valid
        assert not FormValidationResult({}, ['x: bad']).is_valid
        assert FormValidationResult(None).to_dict() == {'is_valid': True, 'sanitized': {}, 'errors': []}
