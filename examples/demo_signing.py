"""
Demonstration: Page Signature Lifecycle

Follows one policy page from its first signature through an edit, a
rejected stale request, a second signature and a drift check.

Run with: python -m examples.demo_signing
"""

from wikisign.config import SigningConfig
from wikisign.core import Actor, GroupTarget, StaleRevision, UserTarget, parse_target_args
from wikisign.db import InMemorySignatureStore
from wikisign.host import InMemoryWiki
from wikisign.services import build_services


def banner(title):
    print("=" * 60)
    print(title)
    print("=" * 60)


def main():
    banner("wikisign - Page Signature Lifecycle Demonstration")
    print()

    wiki = InMemoryWiki()
    wiki.add_user(1, "Alice", {"sysop"})
    wiki.add_user(2, "Bob", {"editor"})
    page_id = 42
    rev = wiki.add_page(
        page_id,
        "Procurement Policy",
        "== Procurement ==\nPurchases above 10,000 need two quotes.\n",
    )

    services = build_services(
        config=SigningConfig(session_secret="demo"),
        store=InMemorySignatureStore(),
        wiki=wiki,
    )
    alice = Actor.from_directory(1, services.directory)
    bob = Actor.from_directory(2, services.directory)

    # The page declares its signing target the way page markup would
    target = parse_target_args(["group=sysop"])
    print(f"Page {page_id} asks for: {services.resolver.describe(target)}")
    print()

    # ================================================================
    # STEP 1: SIGN
    # ================================================================
    banner("STEP 1: SIGN CURRENT REVISION")
    result = services.workflow.sign(page_id, rev, target, alice, remarks="Reviewed by finance")
    print(f"[OK] Signed revision {result.revision_id} as user {result.signer_id}")
    print(f"   Hash: {result.content_hash}")
    print(f"   State: {services.workflow.status(page_id, target, alice).state}")
    print()

    # ================================================================
    # STEP 2: EDIT
    # ================================================================
    banner("STEP 2: EDIT THE PAGE")
    new_rev = wiki.save_revision(
        page_id,
        "== Procurement ==\nPurchases above 5,000 need two quotes.\n",
    )
    print(f"[OK] Saved revision {new_rev}")
    print(f"   Valid signature left: {services.store.get_current_signature(page_id)}")
    print(f"   State: {services.workflow.status(page_id, target, alice).state}")
    print()

    # ================================================================
    # STEP 3: STALE REQUEST
    # ================================================================
    banner("STEP 3: SIGN THE OLD REVISION")
    try:
        services.workflow.sign(page_id, rev, target, alice)
    except StaleRevision as e:
        print(f"[REJECTED] {e.code}: {e}")
    print()

    # ================================================================
    # STEP 4: RE-SIGN
    # ================================================================
    banner("STEP 4: SIGN THE NEW REVISION")
    status = services.workflow.status(page_id, UserTarget("Alice"), bob)
    print(f"   Bob can sign for Alice: {status.can_sign}")
    result = services.workflow.sign(page_id, new_rev, GroupTarget("sysop"), alice)
    print(f"[OK] Signed revision {result.revision_id}")
    print()

    # ================================================================
    # VERIFY AND HISTORY
    # ================================================================
    banner("VERIFICATION")
    report = services.workflow.verify(page_id)
    print(f"   Signed text still hashes the same: {'[YES]' if report.hash_matches_signed_revision else '[NO]'}")
    print(f"   Current content matches: {'[YES]' if report.current_content_matches else '[NO]'}")
    print()

    banner("SIGNATURE HISTORY")
    for record in services.store.list_history(page_id):
        flag = "valid" if record.is_valid else "invalidated"
        print(
            f"  #{record.signature_id} | {record.timestamp.strftime('%Y-%m-%d %H:%M:%S')} "
            f"| rev {record.revision_id} | user {record.signer_id} | {flag}"
        )
    print()
    print(f"Metrics: {services.metrics.get_summary()}")


if __name__ == "__main__":
    main()
