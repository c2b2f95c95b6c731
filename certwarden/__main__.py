from .cli import cli_root


def launch():
    cli_root(prog_name='certwarden')


if __name__ == '__main__':
    launch()
