#!/usr/bin/env python3
"""
Media Vault: an encrypted media store that is safe to sync or publish.

Nothing on disk is readable without the passphrase:
- Content files have random 32-character alphanumeric names; type, original
  name and folder live only inside encrypted data.
- Folders are directories named by encrypted tokens (``mv1_...``).
- The index (name -> type, folder) is one more encrypted file whose name is
  derived from the vault key.
- ``.mvault`` holds the Argon2 parameters, salt and a verification hash.

Repo layout:
  repo/
    .mvault                    # verifier record (binary, 65 bytes)
    <32 alnum>                 # the index, indistinguishable from content
    <32 alnum>                 # content files in the root folder
    mv1_<token>/               # a virtual folder
      <32 alnum>

Commands:
  init                 Initialize vault (create .mvault and an empty index)
  add <path>           Encrypt a file into a virtual folder
  ls                   List files (after unlock)
  extract <id> <out>   Decrypt by id to output path
  rm <id>              Remove a file (content file and index entry)
  mv <id> <folder>     Move a file to another virtual folder
  rebuild-index        Recreate the index from the files on disk
  change-password      Re-encrypt everything under a new passphrase

Key schedule:
  master   = Argon2id(SHA3-512(passphrase), salt) -> 32 bytes
  verify   = HKDF(master, "mvault-verify-v1")
  vault    = HKDF(master, "mvault-vault-key-v1")
  content, folder names and index name use further HKDF subkeys of vault.
"""
import sys

from mediavault.ui.cli import build_parser
from mediavault.utils.errors import VaultError
from mediavault.utils.securelog import configure_logging


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)
    try:
        args.func(args)
    except VaultError as e:
        print(f"[!] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
