from lora_endpoint.app import main

raise SystemExit(main())
