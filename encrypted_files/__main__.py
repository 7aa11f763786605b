import sys

from encrypted_files.scripts.encrypted_files import main

if __name__ == "__main__":
    sys.exit(main())
