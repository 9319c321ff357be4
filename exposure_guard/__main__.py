from exposure_guard import main

main()
