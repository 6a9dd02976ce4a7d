from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class ShopIdentification:
    """
    Who is shopping: a registered member or an anonymous session code.
    Exactly one of the two is set.
    """
    member_id: Optional[str] = None
    external_code: Optional[str] = None

    def __post_init__(self) -> None:
        if (self.member_id is None) == (self.external_code is None):
            raise ValueError(
                "exactly one of member_id and external_code must be set"
            )

    def db_identification(self) -> Dict[str, Optional[str]]:
        # column values for new ledger rows
        return {
            "member_id": self.member_id,
            "external_code": self.external_code,
        }

    def as_dict(self) -> Dict[str, str]:
        if self.member_id is not None:
            return {"member_id": self.member_id}
        return {"external_code": self.external_code}
