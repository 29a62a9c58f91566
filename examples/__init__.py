"""
Soft Lifecycle Toolkit Examples

Available Examples:
------------------

blog_lifecycle_example.py
    Destroying a post with its comments, querying destroyed records,
    restoring what was destroyed together and counter caches.

Running Examples:
----------------

    python examples/blog_lifecycle_example.py

The examples use an in-memory SQLite database.
"""

EXAMPLES = {
    "basic": ["blog_lifecycle_example.py - Destroy, restore and scoping"],
}


def list_examples():
    """Print available examples by category."""
    print("Soft Lifecycle Toolkit Examples")
    print("=" * 50)

    for category, examples in EXAMPLES.items():
        print(f"\n{category.title()}:")
        for example in examples:
            print(f"  - {example}")


if __name__ == "__main__":
    list_examples()
