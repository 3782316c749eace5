from autosetup.main import autosetup

if __name__ == "__main__":  # pragma: no cover
    autosetup(prog_name="autosetup")
