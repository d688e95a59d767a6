"""Purchasable credit bundles."""
from typing import Dict, List, Optional

from soundstage.core.errors import ValidationError
from soundstage.models.credits import CreditBundle

CREDIT_BUNDLES: Dict[str, CreditBundle] = {
    bundle.id: bundle
    for bundle in (
        CreditBundle(id="starter", name="Starter Pack", credits=100, bonus=0, price_cents=500),
        CreditBundle(id="popular", name="Popular Pack", credits=350, bonus=50, price_cents=1500, popular=True),
        CreditBundle(id="pro", name="Pro Pack", credits=1000, bonus=200, price_cents=4000),
    )
}


def find_bundle(bundle_id: Optional[str]) -> Optional[CreditBundle]:
    if not bundle_id:
        return None
    return CREDIT_BUNDLES.get(bundle_id)


def get_bundle(bundle_id: Optional[str]) -> CreditBundle:
    bundle = find_bundle(bundle_id)
    if bundle is None:
        raise ValidationError(f"Unknown credit bundle: {bundle_id}", details={"bundle_id": bundle_id})
    return bundle


def list_bundles() -> List[CreditBundle]:
    return list(CREDIT_BUNDLES.values())
