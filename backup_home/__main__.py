from backup_home.cli import main

main(prog_name='backup-home')
