from __future__ import annotations

from orderflow.services.encryption import generate_iv, generate_key


def main() -> None:
    print(f"ENCRYPTION_KEY={generate_key()}")
    print(f"ENCRYPTION_IV={generate_iv()}")


if __name__ == "__main__":
    main()
