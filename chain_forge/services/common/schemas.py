import flask
from flask_marshmallow.schema import Schema


class CFSchema(Schema):
    """Request schema with a convenience method for validation and deserialization."""

    def validate_and_deserialize(self, data_obj) -> dict:
        """Validate `data_obj` and deserialize its fields to native python objects.

        :raises werkzeug.exceptions.BadRequest: if validating `data_obj` did not succeed.
        """
        errors = self.validate(data_obj)
        if errors:
            flask.abort(400, str(errors))
        return self.load(data_obj)
