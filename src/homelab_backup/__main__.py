from homelab_backup.cli import main

raise SystemExit(main())
