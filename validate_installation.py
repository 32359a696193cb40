#!/usr/bin/env python3
"""
Validation script for Roster Sync.

Checks that all dependencies are installed and that the core components work
without touching the directory or the CMS.
"""

import io
import sys
import random
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("PyYAML", "yaml"),
        ("httpx", "httpx"),
        ("Pillow", "PIL"),
        ("pydantic", "pydantic"),
        ("ldap3", "ldap3"),
    ]

    optional_dependencies = [
        ("pytest (tests only)", "pytest"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    print("\n  Optional dependencies:")
    for pkg_name, import_name in optional_dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "roster_sync.models",
        "roster_sync.title_parser",
        "roster_sync.roles",
        "roster_sync.avatar",
        "roster_sync.normalizer",
        "roster_sync.reconciler",
        "roster_sync.config",
        "roster_sync.main",
        "roster_sync.notifications",
        "roster_sync.retry",
        "roster_sync.sources.slack",
        "roster_sync.sources.ldap_directory",
        "roster_sync.sinks.sanity",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate key functionality."""
    print("\n=== Functionality Validation ===")

    try:
        from roster_sync.title_parser import parse_title
        facts = parse_title("Associate Director - Consulting (CASIE)")
        assert (facts.position, facts.department) == ('Associate Director', 'Consulting')
        assert parse_title("Alumni").is_alumni
        print("  ✓ Title parsing")

        from roster_sync.roles import RoleValidator
        assert RoleValidator().validate('President', 'Presidency').is_valid
        print("  ✓ Role validation")

        from PIL import Image
        from roster_sync.avatar import match_url_pattern, sample_dominant_color, DEFAULT_URL_PATTERNS
        assert match_url_pattern("https://a.slack-edge.com/df10d/img/avatars/ava_0001-512.png",
                                 DEFAULT_URL_PATTERNS, [], []) is not None
        buffer = io.BytesIO()
        Image.new('RGB', (64, 64), (40, 120, 200)).save(buffer, format='PNG')
        coverage, _ = sample_dominant_color(buffer.getvalue(), 50, 100, random.Random(0))
        assert coverage == 100.0
        print("  ✓ Avatar classification")

        from roster_sync.reconciler import Reconciler
        plan = Reconciler(sink=None).reconcile([], [{'email': 'gone@example.org'}])
        assert plan.to_delete == ['gone@example.org']
        print("  ✓ Reconciliation planning")

        from roster_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0, exceptions=())
        print("  ✓ Retry mechanism")

        from roster_sync.notifications import format_sync_report
        format_sync_report(None, None, {'dry_run': True})
        print("  ✓ Notification system")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "roster_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
        else:
            print("  ✗ Help command failed")
            return False

        result = subprocess.run([sys.executable, "-m", "roster_sync.main", "--config", "/nonexistent.yaml"],
                                capture_output=True, text=True)
        if result.returncode == 2:
            print("  ✓ Missing configuration reported with exit code 2")
        else:
            print(f"  ✗ Unexpected exit code {result.returncode} for missing configuration")
            return False

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("Roster Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("✓ Roster Sync is ready for use")
        print("\nNext steps:")
        print("  1. Configure the source, sink and roles in config.yaml")
        print("  2. Test with: python -m roster_sync.main --health-check")
        print("  3. Preview changes with: python -m roster_sync.main --dry-run")
        print("  4. Run sync: python -m roster_sync.main")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
