from marshmallow.fields import Float, String
from marshmallow.validate import Length, Range

from chain_forge.services.common.schemas import CFSchema


class FundRequest(CFSchema):
    """POST /api/v1/nodes/<node_id>/fund

    load-only parameters:

        - address (str)
        - amount (float, non-negative)
    """

    address = String(required=True, validate=Length(min=1))
    amount = Float(required=True, validate=Range(min=0))
