import argparse

from mediavault.utils.core import cmd_add, cmd_ls, cmd_extract, cmd_init
from mediavault.utils.dataModels import DEFAULT_T_COST, DEFAULT_M_COST_KiB, DEFAULT_PARALLELISM
from mediavault.utils.maintain import cmd_change_password, cmd_mv, cmd_rebuild, cmd_rm

FILE_TYPES = ("image", "gif", "video", "text")


def _repo_and_pass(p: argparse.ArgumentParser) -> None:
    p.add_argument("repo", help="Path to repo directory")
    p.add_argument("--passphrase", help="Vault passphrase (prompted if omitted)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Encrypted media vault (opaque names, encrypted index)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging (identifiers redacted)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_init = sub.add_parser("init", help="Initialize vault")
    _repo_and_pass(p_init)
    p_init.add_argument("-t", type=int, default=DEFAULT_T_COST, help="Argon2 time cost (iterations)")
    p_init.add_argument("-m", type=int, default=DEFAULT_M_COST_KiB, help="Argon2 memory (KiB)")
    p_init.add_argument("-p", type=int, default=DEFAULT_PARALLELISM, help="Argon2 parallelism")
    p_init.add_argument("--force", action="store_true", help="Overwrite an existing vault verifier")
    p_init.set_defaults(func=cmd_init)

    p_add = sub.add_parser("add", help="Add a file (encrypt)")
    _repo_and_pass(p_add)
    p_add.add_argument("path", help="Plaintext file to add")
    p_add.add_argument("--type", choices=FILE_TYPES, help="File type (guessed from extension if omitted)")
    p_add.add_argument("--folder", default="", help="Virtual folder, e.g. trips/2024")
    p_add.set_defaults(func=cmd_add)

    p_ls = sub.add_parser("ls", help="List files (after unlock)")
    _repo_and_pass(p_ls)
    p_ls.add_argument("--folder", help="Only this virtual folder ('' for root)")
    p_ls.set_defaults(func=cmd_ls)

    p_ext = sub.add_parser("extract", help="Decrypt a file by id")
    _repo_and_pass(p_ext)
    p_ext.add_argument("id", help="Physical name of the file")
    p_ext.add_argument("out", help="Output plaintext path")
    p_ext.set_defaults(func=cmd_extract)

    p_rm = sub.add_parser("rm", help="Remove a file by id")
    _repo_and_pass(p_rm)
    p_rm.add_argument("id", help="Physical name of the file")
    p_rm.set_defaults(func=cmd_rm)

    p_mv = sub.add_parser("mv", help="Move a file to another virtual folder")
    _repo_and_pass(p_mv)
    p_mv.add_argument("id", help="Physical name of the file")
    p_mv.add_argument("folder", help="Destination virtual folder ('' for root)")
    p_mv.set_defaults(func=cmd_mv)

    p_reb = sub.add_parser("rebuild-index", help="Recreate the index by scanning vault files")
    _repo_and_pass(p_reb)
    p_reb.set_defaults(func=cmd_rebuild)

    p_chp = sub.add_parser("change-password", help="Re-encrypt the vault under a new passphrase")
    _repo_and_pass(p_chp)
    p_chp.add_argument("--new-passphrase", help="New passphrase (prompted if omitted)")
    p_chp.add_argument("-t", type=int, help="New Argon2 time cost (default: keep)")
    p_chp.add_argument("-m", type=int, help="New Argon2 memory in KiB (default: keep)")
    p_chp.add_argument("-p", type=int, help="New Argon2 parallelism (default: keep)")
    p_chp.set_defaults(func=cmd_change_password)

    return p
